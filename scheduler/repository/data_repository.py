"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import random
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from scheduler.domain.constraints import DEFAULT_SCORING_WEIGHTS, PricingRules
from scheduler.domain.geo import postcode_district
from scheduler.domain.models import (
    ACTIVE_BOOKING_STATUSES,
    FULL_DAY,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_DECLINED,
    BookedJob,
    Competency,
    Coordinates,
    CoverageArea,
    Customer,
    CustomerHistory,
    EngineerType,
    EngineerWithProfile,
    Qualification,
    Service,
    ServiceType,
    Site,
    SlotPeriod,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


# Dimensions tracked by the rolling cancellation counters.
STAT_ALL = "all"
STAT_WEEKDAY = "weekday"
STAT_SERVICE = "service"
STAT_SLOT = "slot"
STAT_CUSTOMER = "customer"
STAT_SITE = "site"


class SlotAlreadyBookedError(Exception):
    """Raised when an active booking already holds the engineer/date/slot."""


class BookingNotFoundError(Exception):
    """Raised when a booking id does not exist."""


@dataclass(frozen=True)
class CancellationTrainingRecord:
    """Historical booking projection for the cancellation model."""

    lead_time_days: int
    day_of_week: int
    slot: str
    service_slug: str
    cancelled: int


@dataclass(frozen=True)
class AreaStats:
    site_count: int
    booking_count: int


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(str(value)[:10])


def _coordinates(latitude: Any, longitude: Any) -> Optional[Coordinates]:
    if latitude is None or longitude is None:
        return None
    return Coordinates(lat=float(latitude), lng=float(longitude))


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


_JOB_COLUMNS = """
    b.id, b.engineer_id, b.customer_id, b.site_id, b.service_id,
    b.scheduled_date, b.slot, b.status, b.quoted_price, b.estimated_duration,
    b.is_prepaid, s.postcode, s.latitude, s.longitude
"""


def _row_to_job(row: sqlite3.Row) -> BookedJob:
    return BookedJob(
        booking_id=int(row["id"]),
        engineer_id=int(row["engineer_id"]) if row["engineer_id"] is not None else None,
        customer_id=int(row["customer_id"]),
        site_id=int(row["site_id"]),
        service_id=int(row["service_id"]),
        date=date.fromisoformat(row["scheduled_date"]),
        slot=SlotPeriod(row["slot"]),
        status=str(row["status"]),
        quoted_price=float(row["quoted_price"]) if row["quoted_price"] is not None else None,
        estimated_duration=(
            int(row["estimated_duration"]) if row["estimated_duration"] is not None else None
        ),
        postcode=str(row["postcode"]),
        coordinates=_coordinates(row["latitude"], row["longitude"]),
        is_prepaid=bool(row["is_prepaid"]),
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _open(self, *, autocommit: bool = False) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=30.0,
            isolation_level=None if autocommit else "",
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = self._open()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Customers (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        company TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );

                    CREATE TABLE IF NOT EXISTS Sites (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        customer_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        postcode TEXT NOT NULL,
                        postcode_district TEXT NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        FOREIGN KEY (customer_id) REFERENCES Customers(id)
                    );

                    CREATE TABLE IF NOT EXISTS Services (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        slug TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        base_price REAL NOT NULL CHECK (base_price >= 0),
                        min_charge REAL NOT NULL CHECK (min_charge >= 0),
                        base_minutes INTEGER NOT NULL DEFAULT 0,
                        minutes_per_unit REAL NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS Engineers (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        engineer_type TEXT NOT NULL,
                        years_experience REAL NOT NULL DEFAULT 0,
                        day_rate REAL NOT NULL DEFAULT 400,
                        test_rate REAL NOT NULL DEFAULT 0.45,
                        labour_percentage REAL NOT NULL DEFAULT 0.4,
                        rating REAL NOT NULL DEFAULT 4.5,
                        status TEXT NOT NULL DEFAULT 'APPROVED'
                    );

                    CREATE TABLE IF NOT EXISTS EngineerCompetencies (
                        engineer_id INTEGER NOT NULL,
                        service_id INTEGER NOT NULL,
                        experience_years REAL NOT NULL DEFAULT 0,
                        PRIMARY KEY (engineer_id, service_id),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id),
                        FOREIGN KEY (service_id) REFERENCES Services(id)
                    );

                    CREATE TABLE IF NOT EXISTS EngineerCoverageAreas (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        postcode_prefix TEXT NOT NULL,
                        radius_km REAL NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS EngineerQualifications (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        expiry_date TEXT,
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS EngineerUnavailability (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        date TEXT NOT NULL,
                        slot TEXT NOT NULL CHECK (slot IN ('AM', 'PM', 'FULL_DAY')),
                        reason TEXT,
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        customer_id INTEGER NOT NULL,
                        site_id INTEGER NOT NULL,
                        service_id INTEGER NOT NULL,
                        engineer_id INTEGER,
                        scheduled_date TEXT NOT NULL,
                        slot TEXT NOT NULL CHECK (slot IN ('AM', 'PM')),
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        quoted_price REAL,
                        estimated_duration INTEGER,
                        is_prepaid INTEGER NOT NULL DEFAULT 0 CHECK (is_prepaid IN (0, 1)),
                        created_on TEXT NOT NULL,
                        completed_on TEXT,
                        FOREIGN KEY (customer_id) REFERENCES Customers(id),
                        FOREIGN KEY (site_id) REFERENCES Sites(id),
                        FOREIGN KEY (service_id) REFERENCES Services(id),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS CancellationStats (
                        stat_date TEXT NOT NULL,
                        dimension TEXT NOT NULL,
                        dimension_key TEXT NOT NULL,
                        total INTEGER NOT NULL DEFAULT 0,
                        cancelled INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (dimension, dimension_key, stat_date)
                    );

                    CREATE TABLE IF NOT EXISTS PricingRuleSets (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        config_json TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 0,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (name, version)
                    );

                    CREATE TABLE IF NOT EXISTS ScoringConfigs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        config_json TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 0,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (name, version)
                    );

                    CREATE TABLE IF NOT EXISTS ModelMetadata (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        model_type TEXT NOT NULL,
                        model_version TEXT NOT NULL,
                        trained_at TEXT NOT NULL
                    );

                    CREATE UNIQUE INDEX IF NOT EXISTS ux_bookings_active_engineer_slot
                    ON Bookings(engineer_id, scheduled_date, slot)
                    WHERE engineer_id IS NOT NULL
                      AND status IN ('PENDING', 'CONFIRMED', 'EN_ROUTE', 'ON_SITE', 'IN_PROGRESS');

                    CREATE INDEX IF NOT EXISTS idx_bookings_engineer_date
                    ON Bookings(engineer_id, scheduled_date, status);

                    CREATE INDEX IF NOT EXISTS idx_bookings_customer
                    ON Bookings(customer_id, status);

                    CREATE INDEX IF NOT EXISTS idx_sites_district
                    ON Sites(postcode_district);

                    CREATE INDEX IF NOT EXISTS idx_unavailability_engineer_date
                    ON EngineerUnavailability(engineer_id, date);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_customer(self, name: str, company: Optional[str] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO Customers (name, company) VALUES (?, ?);",
                (name, company),
            )
            return int(cursor.lastrowid)

    def create_site(
        self,
        customer_id: int,
        name: str,
        postcode: str,
        coordinates: Optional[Coordinates] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Sites (customer_id, name, postcode, postcode_district, latitude, longitude)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    customer_id,
                    name,
                    postcode,
                    postcode_district(postcode),
                    coordinates.lat if coordinates else None,
                    coordinates.lng if coordinates else None,
                ),
            )
            return int(cursor.lastrowid)

    def create_service(
        self,
        slug: str,
        name: str,
        base_price: float,
        min_charge: float,
        base_minutes: int = 0,
        minutes_per_unit: float = 0.0,
    ) -> int:
        ServiceType.from_slug(slug)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Services (slug, name, base_price, min_charge, base_minutes, minutes_per_unit)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (slug, name, base_price, min_charge, base_minutes, minutes_per_unit),
            )
            return int(cursor.lastrowid)

    def create_engineer(
        self,
        name: str,
        engineer_type: EngineerType,
        *,
        years_experience: float = 0.0,
        day_rate: float = 400.0,
        test_rate: float = 0.45,
        labour_percentage: float = 0.4,
        rating: float = 4.5,
        status: str = "APPROVED",
        competencies: Iterable[Competency] = (),
        coverage_areas: Iterable[CoverageArea] = (),
        qualifications: Iterable[Qualification] = (),
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Engineers (
                    name, engineer_type, years_experience, day_rate,
                    test_rate, labour_percentage, rating, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    name,
                    engineer_type.value,
                    years_experience,
                    day_rate,
                    test_rate,
                    labour_percentage,
                    rating,
                    status,
                ),
            )
            engineer_id = int(cursor.lastrowid)
            conn.executemany(
                """
                INSERT INTO EngineerCompetencies (engineer_id, service_id, experience_years)
                VALUES (?, ?, ?);
                """,
                [(engineer_id, item.service_id, item.experience_years) for item in competencies],
            )
            conn.executemany(
                """
                INSERT INTO EngineerCoverageAreas (engineer_id, postcode_prefix, radius_km, latitude, longitude)
                VALUES (?, ?, ?, ?, ?);
                """,
                [
                    (
                        engineer_id,
                        area.postcode_prefix,
                        area.radius_km,
                        area.coordinates.lat if area.coordinates else None,
                        area.coordinates.lng if area.coordinates else None,
                    )
                    for area in coverage_areas
                ],
            )
            conn.executemany(
                "INSERT INTO EngineerQualifications (engineer_id, name, expiry_date) VALUES (?, ?, ?);",
                [
                    (
                        engineer_id,
                        item.name,
                        item.expiry_date.isoformat() if item.expiry_date else None,
                    )
                    for item in qualifications
                ],
            )
            return engineer_id

    def add_unavailability(
        self,
        engineer_id: int,
        on_date: date,
        slot: str = FULL_DAY,
        reason: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO EngineerUnavailability (engineer_id, date, slot, reason) VALUES (?, ?, ?, ?);",
                (engineer_id, on_date.isoformat(), slot, reason),
            )

    @staticmethod
    def _bump_cancellation_stats(
        conn: sqlite3.Connection,
        *,
        stat_date: str,
        customer_id: int,
        site_id: int,
        service_id: int,
        scheduled_date: date,
        slot: str,
        total_delta: int,
        cancelled_delta: int,
    ) -> None:
        keys = [
            (STAT_ALL, STAT_ALL),
            (STAT_WEEKDAY, str(scheduled_date.weekday())),
            (STAT_SERVICE, str(service_id)),
            (STAT_SLOT, slot),
            (STAT_CUSTOMER, str(customer_id)),
            (STAT_SITE, str(site_id)),
        ]
        conn.executemany(
            """
            INSERT INTO CancellationStats (stat_date, dimension, dimension_key, total, cancelled)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (dimension, dimension_key, stat_date) DO UPDATE SET
                total = total + excluded.total,
                cancelled = cancelled + excluded.cancelled;
            """,
            [
                (stat_date, dimension, key, total_delta, cancelled_delta)
                for dimension, key in keys
            ],
        )

    def _insert_booking_row(
        self,
        conn: sqlite3.Connection,
        *,
        customer_id: int,
        site_id: int,
        service_id: int,
        engineer_id: Optional[int],
        scheduled_date: date,
        slot: SlotPeriod,
        status: str,
        quoted_price: Optional[float],
        estimated_duration: Optional[int],
        is_prepaid: bool,
        created_on: date,
        completed_on: Optional[date],
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Bookings (
                customer_id, site_id, service_id, engineer_id, scheduled_date, slot,
                status, quoted_price, estimated_duration, is_prepaid, created_on, completed_on
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                customer_id,
                site_id,
                service_id,
                engineer_id,
                scheduled_date.isoformat(),
                slot.value,
                status,
                quoted_price,
                estimated_duration,
                int(is_prepaid),
                created_on.isoformat(),
                completed_on.isoformat() if completed_on else None,
            ),
        )
        self._bump_cancellation_stats(
            conn,
            stat_date=created_on.isoformat(),
            customer_id=customer_id,
            site_id=site_id,
            service_id=service_id,
            scheduled_date=scheduled_date,
            slot=slot.value,
            total_delta=1,
            cancelled_delta=1 if status == STATUS_CANCELLED else 0,
        )
        return int(cursor.lastrowid)

    def insert_booking(
        self,
        *,
        customer_id: int,
        site_id: int,
        service_id: int,
        engineer_id: Optional[int],
        scheduled_date: date,
        slot: SlotPeriod,
        status: str = STATUS_CONFIRMED,
        quoted_price: Optional[float] = None,
        estimated_duration: Optional[int] = None,
        is_prepaid: bool = False,
        created_on: Optional[date] = None,
        completed_on: Optional[date] = None,
    ) -> int:
        """Insert a booking and update the rolling counters in one transaction."""
        try:
            with self._connect() as conn:
                return self._insert_booking_row(
                    conn,
                    customer_id=customer_id,
                    site_id=site_id,
                    service_id=service_id,
                    engineer_id=engineer_id,
                    scheduled_date=scheduled_date,
                    slot=slot,
                    status=status,
                    quoted_price=quoted_price,
                    estimated_duration=estimated_duration,
                    is_prepaid=is_prepaid,
                    created_on=created_on or datetime.now(timezone.utc).date(),
                    completed_on=completed_on,
                )
        except sqlite3.IntegrityError as exc:
            if "ux_bookings_active_engineer_slot" in str(exc) or "UNIQUE" in str(exc):
                raise SlotAlreadyBookedError(
                    f"engineer {engineer_id} already booked on {scheduled_date} {slot.value}"
                ) from exc
            raise

    def claim_slot(
        self,
        *,
        customer_id: int,
        site_id: int,
        service_id: int,
        engineer_id: int,
        scheduled_date: date,
        slot: SlotPeriod,
        quoted_price: float,
        estimated_duration: int,
        is_prepaid: bool = False,
        created_on: Optional[date] = None,
    ) -> int:
        """Atomic check-and-write of a new booking for an engineer slot."""
        conn = self._open(autocommit=True)
        try:
            conn.execute("BEGIN IMMEDIATE;")
            status_values = list(ACTIVE_BOOKING_STATUSES)
            existing = conn.execute(
                f"""
                SELECT id FROM Bookings
                WHERE engineer_id = ? AND scheduled_date = ? AND slot = ?
                  AND status IN ({_placeholders(status_values)})
                LIMIT 1;
                """,
                (engineer_id, scheduled_date.isoformat(), slot.value, *status_values),
            ).fetchone()
            if existing is not None:
                conn.execute("ROLLBACK;")
                raise SlotAlreadyBookedError(
                    f"engineer {engineer_id} already booked on {scheduled_date} {slot.value}"
                )
            booking_id = self._insert_booking_row(
                conn,
                customer_id=customer_id,
                site_id=site_id,
                service_id=service_id,
                engineer_id=engineer_id,
                scheduled_date=scheduled_date,
                slot=slot,
                status=STATUS_CONFIRMED,
                quoted_price=quoted_price,
                estimated_duration=estimated_duration,
                is_prepaid=is_prepaid,
                created_on=created_on or datetime.now(timezone.utc).date(),
                completed_on=None,
            )
            conn.execute("COMMIT;")
            return booking_id
        except sqlite3.IntegrityError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            if "ux_bookings_active_engineer_slot" in str(exc) or "UNIQUE" in str(exc):
                raise SlotAlreadyBookedError(
                    f"engineer {engineer_id} already booked on {scheduled_date} {slot.value}"
                ) from exc
            raise
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            raise
        finally:
            conn.close()

    def update_booking_status(
        self,
        booking_id: int,
        status: str,
        *,
        completed_on: Optional[date] = None,
    ) -> None:
        """Change status; cancellations are counted against the booking's creation date."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT customer_id, site_id, service_id, scheduled_date, slot, status, created_on
                FROM Bookings WHERE id = ?;
                """,
                (booking_id,),
            ).fetchone()
            if row is None:
                raise BookingNotFoundError(f"booking_id {booking_id} not found")

            previous = str(row["status"])
            conn.execute(
                "UPDATE Bookings SET status = ?, completed_on = COALESCE(?, completed_on) WHERE id = ?;",
                (status, completed_on.isoformat() if completed_on else None, booking_id),
            )
            if (previous == STATUS_CANCELLED) == (status == STATUS_CANCELLED):
                return
            self._bump_cancellation_stats(
                conn,
                stat_date=str(row["created_on"]),
                customer_id=int(row["customer_id"]),
                site_id=int(row["site_id"]),
                service_id=int(row["service_id"]),
                scheduled_date=date.fromisoformat(row["scheduled_date"]),
                slot=str(row["slot"]),
                total_delta=0,
                cancelled_delta=1 if status == STATUS_CANCELLED else -1,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, company FROM Customers WHERE id = ?;",
                (customer_id,),
            ).fetchone()
        if row is None:
            return None
        return Customer(customer_id=int(row["id"]), name=str(row["name"]), company=row["company"])

    def get_site(self, site_id: int) -> Optional[Site]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, customer_id, name, postcode, latitude, longitude FROM Sites WHERE id = ?;",
                (site_id,),
            ).fetchone()
        if row is None:
            return None
        return Site(
            site_id=int(row["id"]),
            customer_id=int(row["customer_id"]),
            name=str(row["name"]),
            postcode=str(row["postcode"]),
            coordinates=_coordinates(row["latitude"], row["longitude"]),
        )

    @staticmethod
    def _row_to_service(row: sqlite3.Row) -> Service:
        return Service(
            service_id=int(row["id"]),
            slug=str(row["slug"]),
            name=str(row["name"]),
            service_type=ServiceType.from_slug(str(row["slug"])),
            base_price=float(row["base_price"]),
            min_charge=float(row["min_charge"]),
            base_minutes=int(row["base_minutes"]),
            minutes_per_unit=float(row["minutes_per_unit"]),
        )

    def get_service(self, service_id: int) -> Optional[Service]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM Services WHERE id = ?;", (service_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_service(row)

    def _load_engineers(self, conn: sqlite3.Connection, engineer_rows: list[sqlite3.Row]) -> list[EngineerWithProfile]:
        if not engineer_rows:
            return []
        ids = [int(row["id"]) for row in engineer_rows]
        marks = _placeholders(ids)

        competencies: dict[int, list[Competency]] = {engineer_id: [] for engineer_id in ids}
        for row in conn.execute(
            f"""
            SELECT engineer_id, service_id, experience_years FROM EngineerCompetencies
            WHERE engineer_id IN ({marks}) ORDER BY engineer_id, service_id;
            """,
            ids,
        ):
            competencies[int(row["engineer_id"])].append(
                Competency(service_id=int(row["service_id"]), experience_years=float(row["experience_years"]))
            )

        coverage: dict[int, list[CoverageArea]] = {engineer_id: [] for engineer_id in ids}
        for row in conn.execute(
            f"""
            SELECT engineer_id, postcode_prefix, radius_km, latitude, longitude
            FROM EngineerCoverageAreas WHERE engineer_id IN ({marks}) ORDER BY id;
            """,
            ids,
        ):
            coverage[int(row["engineer_id"])].append(
                CoverageArea(
                    postcode_prefix=str(row["postcode_prefix"]),
                    radius_km=float(row["radius_km"]),
                    coordinates=_coordinates(row["latitude"], row["longitude"]),
                )
            )

        qualifications: dict[int, list[Qualification]] = {engineer_id: [] for engineer_id in ids}
        for row in conn.execute(
            f"""
            SELECT engineer_id, name, expiry_date FROM EngineerQualifications
            WHERE engineer_id IN ({marks}) ORDER BY id;
            """,
            ids,
        ):
            qualifications[int(row["engineer_id"])].append(
                Qualification(name=str(row["name"]), expiry_date=_parse_date(row["expiry_date"]))
            )

        engineers: list[EngineerWithProfile] = []
        for row in engineer_rows:
            engineer_id = int(row["id"])
            areas = coverage[engineer_id]
            primary = areas[0] if areas else None
            if primary is not None and primary.postcode_prefix.strip():
                base_postcode = f"{primary.postcode_prefix.strip().upper()}1 1AA"
            else:
                base_postcode = self._settings.default_base_postcode
            engineers.append(
                EngineerWithProfile(
                    engineer_id=engineer_id,
                    name=str(row["name"]),
                    engineer_type=EngineerType(row["engineer_type"]),
                    years_experience=float(row["years_experience"]),
                    day_rate=float(row["day_rate"]),
                    test_rate=float(row["test_rate"]),
                    labour_percentage=float(row["labour_percentage"]),
                    rating=float(row["rating"]),
                    competencies=tuple(competencies[engineer_id]),
                    coverage_areas=tuple(areas),
                    qualifications=tuple(qualifications[engineer_id]),
                    base_postcode=base_postcode,
                    base_coordinates=primary.coordinates if primary else None,
                    preferred_radius_km=(
                        primary.radius_km if primary else self._settings.default_coverage_radius_km
                    ),
                )
            )
        return engineers

    def get_engineer(self, engineer_id: int) -> Optional[EngineerWithProfile]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM Engineers WHERE id = ?;", (engineer_id,)).fetchall()
            engineers = self._load_engineers(conn, rows)
        return engineers[0] if engineers else None

    def get_engineers(self, engineer_ids: Iterable[int]) -> dict[int, EngineerWithProfile]:
        ids = sorted(set(engineer_ids))
        if not ids:
            return {}
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM Engineers WHERE id IN ({_placeholders(ids)}) ORDER BY id;",
                ids,
            ).fetchall()
            engineers = self._load_engineers(conn, rows)
        return {engineer.engineer_id: engineer for engineer in engineers}

    def list_engineers_for_service(self, service_id: int) -> list[EngineerWithProfile]:
        """Approved engineers holding a competency for the service."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM Engineers e
                JOIN EngineerCompetencies c ON c.engineer_id = e.id
                WHERE c.service_id = ? AND e.status = 'APPROVED'
                ORDER BY e.id;
                """,
                (service_id,),
            ).fetchall()
            return self._load_engineers(conn, rows)

    def get_unavailability(
        self,
        engineer_ids: Sequence[int],
        start_date: date,
        end_date: date,
    ) -> dict[tuple[int, date], set[str]]:
        if not engineer_ids:
            return {}
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT engineer_id, date, slot FROM EngineerUnavailability
                WHERE engineer_id IN ({_placeholders(engineer_ids)}) AND date BETWEEN ? AND ?;
                """,
                (*engineer_ids, start_date.isoformat(), end_date.isoformat()),
            ).fetchall()
        blocked: dict[tuple[int, date], set[str]] = {}
        for row in rows:
            key = (int(row["engineer_id"]), date.fromisoformat(row["date"]))
            blocked.setdefault(key, set()).add(str(row["slot"]))
        return blocked

    def list_jobs_between(
        self,
        start_date: date,
        end_date: date,
        statuses: Sequence[str] = ACTIVE_BOOKING_STATUSES,
        *,
        engineer_id: Optional[int] = None,
    ) -> list[BookedJob]:
        """Bookings with an assigned engineer scheduled in [start_date, end_date]."""
        status_values = list(statuses)
        query = f"""
            SELECT {_JOB_COLUMNS}
            FROM Bookings b JOIN Sites s ON s.id = b.site_id
            WHERE b.engineer_id IS NOT NULL
              AND b.scheduled_date BETWEEN ? AND ?
              AND b.status IN ({_placeholders(status_values)})
        """
        params: list[Any] = [start_date.isoformat(), end_date.isoformat(), *status_values]
        if engineer_id is not None:
            query += " AND b.engineer_id = ?"
            params.append(engineer_id)
        query += " ORDER BY b.scheduled_date, b.slot, b.id;"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_engineer_jobs(
        self,
        engineer_id: int,
        on_date: date,
        statuses: Sequence[str] = ACTIVE_BOOKING_STATUSES,
    ) -> list[BookedJob]:
        return self.list_jobs_between(on_date, on_date, statuses, engineer_id=engineer_id)

    def get_booking(self, booking_id: int) -> Optional[BookedJob]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM Bookings b JOIN Sites s ON s.id = b.site_id WHERE b.id = ?;",
                (booking_id,),
            ).fetchone()
        return _row_to_job(row) if row is not None else None

    def get_customer_history(self, customer_id: int) -> CustomerHistory:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS completed,
                    COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS cancelled,
                    COALESCE(SUM(CASE WHEN status = ? THEN quoted_price ELSE 0 END), 0) AS revenue,
                    MAX(CASE WHEN status = ? THEN completed_on END) AS last_completed
                FROM Bookings WHERE customer_id = ?;
                """,
                (STATUS_COMPLETED, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_COMPLETED, customer_id),
            ).fetchone()
        return CustomerHistory(
            total_bookings=int(row["total"]),
            completed_bookings=int(row["completed"]),
            cancelled_bookings=int(row["cancelled"]),
            total_revenue=float(row["revenue"]),
            last_completed_on=_parse_date(row["last_completed"]),
        )

    def count_engineer_completed_jobs(self, engineer_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM Bookings WHERE engineer_id = ? AND status = ?;",
                (engineer_id, STATUS_COMPLETED),
            ).fetchone()
        return int(row["count"])

    def get_area_stats(self, district: str) -> AreaStats:
        with self._connect() as conn:
            site_row = conn.execute(
                "SELECT COUNT(*) AS count FROM Sites WHERE postcode_district = ?;",
                (district,),
            ).fetchone()
            booking_row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM Bookings b JOIN Sites s ON s.id = b.site_id
                WHERE s.postcode_district = ? AND b.status NOT IN (?, ?);
                """,
                (district, STATUS_CANCELLED, STATUS_DECLINED),
            ).fetchone()
        return AreaStats(site_count=int(site_row["count"]), booking_count=int(booking_row["count"]))

    def get_cancellation_counts(
        self,
        dimension: str,
        *,
        since: Optional[date] = None,
        until: Optional[date] = None,
        key: Optional[str] = None,
    ) -> dict[str, tuple[int, int]]:
        """(total, cancelled) per dimension key from the rolling counters."""
        query = """
            SELECT dimension_key, SUM(total) AS total, SUM(cancelled) AS cancelled
            FROM CancellationStats WHERE dimension = ?
        """
        params: list[Any] = [dimension]
        if key is not None:
            query += " AND dimension_key = ?"
            params.append(key)
        if since is not None:
            query += " AND stat_date >= ?"
            params.append(since.isoformat())
        if until is not None:
            query += " AND stat_date <= ?"
            params.append(until.isoformat())
        query += " GROUP BY dimension_key;"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return {
            str(row["dimension_key"]): (int(row["total"]), int(row["cancelled"]))
            for row in rows
        }

    def list_cancellation_training_rows(self) -> list[CancellationTrainingRecord]:
        """Resolved bookings (completed or cancelled) with their booking lead time."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT b.scheduled_date, b.created_on, b.slot, b.status, sv.slug
                FROM Bookings b JOIN Services sv ON sv.id = b.service_id
                WHERE b.status IN (?, ?)
                ORDER BY b.id;
                """,
                (STATUS_COMPLETED, STATUS_CANCELLED),
            ).fetchall()
        records: list[CancellationTrainingRecord] = []
        for row in rows:
            scheduled = date.fromisoformat(row["scheduled_date"])
            created = date.fromisoformat(row["created_on"])
            records.append(
                CancellationTrainingRecord(
                    lead_time_days=max(0, (scheduled - created).days),
                    day_of_week=scheduled.weekday(),
                    slot=str(row["slot"]),
                    service_slug=str(row["slug"]),
                    cancelled=1 if row["status"] == STATUS_CANCELLED else 0,
                )
            )
        return records

    # ------------------------------------------------------------------
    # Versioned configuration
    # ------------------------------------------------------------------

    def _save_config(self, table: str, name: str, version: int, payload: dict[str, Any], activate: bool) -> None:
        with self._connect() as conn:
            if activate:
                conn.execute(f"UPDATE {table} SET is_active = 0;")
            conn.execute(
                f"""
                INSERT INTO {table} (name, version, config_json, is_active) VALUES (?, ?, ?, ?)
                ON CONFLICT (name, version) DO UPDATE SET
                    config_json = excluded.config_json,
                    is_active = excluded.is_active;
                """,
                (name, version, json.dumps(payload, sort_keys=True), int(activate)),
            )

    def _get_active_config(self, table: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT config_json FROM {table} WHERE is_active = 1 ORDER BY version DESC, id DESC LIMIT 1;"
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["config_json"])

    def save_pricing_rules(self, payload: dict[str, Any], *, activate: bool = True) -> None:
        self._save_config(
            "PricingRuleSets",
            str(payload.get("name", "standard")),
            int(payload.get("version", 1)),
            payload,
            activate,
        )

    def get_active_pricing_rules(self) -> Optional[dict[str, Any]]:
        return self._get_active_config("PricingRuleSets")

    def save_scoring_weights(self, payload: dict[str, Any], *, activate: bool = True) -> None:
        self._save_config(
            "ScoringConfigs",
            str(payload.get("name", "default")),
            int(payload.get("version", 1)),
            payload,
            activate,
        )

    def get_active_scoring_weights(self) -> Optional[dict[str, Any]]:
        return self._get_active_config("ScoringConfigs")

    def save_model_metadata(self, model_type: str, model_version: str, trained_at: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO ModelMetadata (model_type, model_version, trained_at) VALUES (?, ?, ?);",
                (model_type, model_version, trained_at),
            )

    def get_model_metadata(self) -> Optional[dict[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT model_type, model_version, trained_at FROM ModelMetadata ORDER BY id DESC LIMIT 1;"
            ).fetchone()
        if row is None:
            return None
        return {
            "model_type": str(row["model_type"]),
            "model_version": str(row["model_version"]),
            "trained_at": str(row["trained_at"]),
        }

    # ------------------------------------------------------------------
    # Synthetic data
    # ------------------------------------------------------------------

    def seed_synthetic_data(self) -> None:
        """Seed deterministic synthetic catalogue and history only when tables are empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        with self._connect() as conn:
            count = int(conn.execute("SELECT COUNT(*) AS count FROM Services;").fetchone()["count"])
        if count > 0:
            logger.info("Synthetic data already present; skipping seed")
            return

        service_ids = {
            ServiceType.PAT_TESTING: self.create_service("pat-testing", "PAT Testing", 1.50, 75.0, 30, 2),
            ServiceType.FIRE_ALARM_TESTING: self.create_service(
                "fire-alarm-testing", "Fire Alarm Testing", 8.0, 150.0, 45, 15
            ),
            ServiceType.EMERGENCY_LIGHTING: self.create_service(
                "emergency-lighting", "Emergency Lighting", 5.0, 120.0, 30, 5
            ),
            ServiceType.FIXED_WIRE_TESTING: self.create_service(
                "fixed-wire-testing", "Fixed Wire Testing", 15.0, 200.0, 60, 10
            ),
            ServiceType.FIRE_RISK_ASSESSMENT: self.create_service(
                "fire-risk-assessment", "Fire Risk Assessment", 250.0, 250.0, 120, 30
            ),
        }

        site_specs = [
            ("EC1A 4JQ", 51.5194, -0.0990),
            ("EC2V 7HH", 51.5155, -0.0922),
            ("EC3M 1AJ", 51.5120, -0.0830),
            ("WC1B 3DG", 51.5190, -0.1260),
            ("E1 6AN", 51.5200, -0.0720),
            ("E14 5AB", 51.5054, -0.0235),
            ("N1 9GU", 51.5353, -0.1230),
            ("M1 1AE", 53.4794, -2.2453),
            ("M2 5DB", 53.4808, -2.2426),
            ("M4 1HN", 53.4846, -2.2360),
        ]
        customer_ids: list[int] = []
        site_ids: list[int] = []
        for index, (postcode, lat, lng) in enumerate(site_specs, start=1):
            customer_id = self.create_customer(f"Customer {index}", company=f"Company {index} Ltd")
            customer_ids.append(customer_id)
            site_ids.append(
                self.create_site(customer_id, f"Site {index}", postcode, Coordinates(lat=lat, lng=lng))
            )

        london = Coordinates(lat=51.5170, lng=-0.0900)
        manchester = Coordinates(lat=53.4808, lng=-2.2426)
        today = datetime.now(timezone.utc).date()
        engineer_specs = [
            ("Aisha Khan", EngineerType.PAT_TESTER, 6, "EC", london, [ServiceType.PAT_TESTING]),
            (
                "Tom Reilly",
                EngineerType.ELECTRICIAN,
                9,
                "E",
                london,
                [ServiceType.PAT_TESTING, ServiceType.FIXED_WIRE_TESTING, ServiceType.EMERGENCY_LIGHTING],
            ),
            (
                "Priya Shah",
                EngineerType.CONSULTANT,
                12,
                "EC",
                london,
                [ServiceType.FIRE_RISK_ASSESSMENT, ServiceType.FIRE_ALARM_TESTING],
            ),
            (
                "Marcus Lee",
                EngineerType.ELECTRICIAN,
                3,
                "N",
                Coordinates(lat=51.5353, lng=-0.1230),
                [ServiceType.PAT_TESTING, ServiceType.EMERGENCY_LIGHTING, ServiceType.FIRE_ALARM_TESTING],
            ),
            ("Dan Evans", EngineerType.ELECTRICIAN, 7, "M", manchester, list(ServiceType)),
            ("Sofia Rossi", EngineerType.PAT_TESTER, 2, "M", manchester, [ServiceType.PAT_TESTING]),
        ]
        engineer_ids: list[int] = []
        for name, engineer_type, years, prefix, base, services in engineer_specs:
            engineer_ids.append(
                self.create_engineer(
                    name,
                    engineer_type,
                    years_experience=years,
                    rating=round(rng.uniform(4.0, 5.0), 1),
                    competencies=[
                        Competency(service_id=service_ids[item], experience_years=years)
                        for item in services
                    ],
                    coverage_areas=[CoverageArea(postcode_prefix=prefix, radius_km=20.0, coordinates=base)],
                    qualifications=[
                        Qualification(name="City & Guilds 2377 PAT", expiry_date=today + timedelta(days=365))
                    ],
                )
            )

        all_services = list(service_ids.values())
        with self._connect() as conn:
            for offset in range(self._settings.synthetic_seed_days, 0, -1):
                scheduled = today - timedelta(days=offset)
                for _ in range(rng.randint(0, 4)):
                    index = rng.randrange(len(site_ids))
                    status = STATUS_CANCELLED if rng.random() < 0.1 else STATUS_COMPLETED
                    self._insert_booking_row(
                        conn,
                        customer_id=customer_ids[index],
                        site_id=site_ids[index],
                        service_id=rng.choice(all_services),
                        engineer_id=rng.choice(engineer_ids),
                        scheduled_date=scheduled,
                        slot=rng.choice(list(SlotPeriod)),
                        status=status,
                        quoted_price=round(rng.uniform(80.0, 450.0), 2),
                        estimated_duration=rng.choice([60, 90, 120, 180]),
                        is_prepaid=rng.random() < 0.2,
                        created_on=scheduled - timedelta(days=rng.randint(0, 21)),
                        completed_on=scheduled if status == STATUS_COMPLETED else None,
                    )

            claimed: set[tuple[int, date, SlotPeriod]] = set()
            for offset in range(1, 15):
                scheduled = today + timedelta(days=offset)
                for _ in range(rng.randint(0, 3)):
                    triple = (rng.choice(engineer_ids), scheduled, rng.choice(list(SlotPeriod)))
                    if triple in claimed:
                        continue
                    claimed.add(triple)
                    index = rng.randrange(len(site_ids))
                    self._insert_booking_row(
                        conn,
                        customer_id=customer_ids[index],
                        site_id=site_ids[index],
                        service_id=rng.choice(all_services),
                        engineer_id=triple[0],
                        scheduled_date=scheduled,
                        slot=triple[2],
                        status=STATUS_CONFIRMED,
                        quoted_price=round(rng.uniform(80.0, 450.0), 2),
                        estimated_duration=rng.choice([60, 90, 120]),
                        is_prepaid=rng.random() < 0.2,
                        created_on=today - timedelta(days=rng.randint(0, 10)),
                        completed_on=None,
                    )

        default_rules = PricingRules(minimum_margin_percent=self._settings.default_minimum_margin_percent)
        self.save_pricing_rules(default_rules.to_dict())
        self.save_scoring_weights(DEFAULT_SCORING_WEIGHTS.to_dict())
        logger.info(
            "Synthetic data seeded | services=%s | sites=%s | engineers=%s | history_days=%s",
            len(service_ids),
            len(site_ids),
            len(engineer_ids),
            self._settings.synthetic_seed_days,
        )
