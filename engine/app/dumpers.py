"""Database dump collaborators.

A dumper turns one database of a target into one plain SQL file on disk.
Connection problems raise ``DatabaseConnectionError``; anything that goes
wrong once connected raises ``DumpError``. The executor decides what a
failure means for the job.
"""

import logging
import threading
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .errors import DatabaseConnectionError, DumpError
from .schemas import DatabaseEngine, DatabaseTarget

logger = logging.getLogger("backupd.dump")

SYSTEM_SCHEMAS = {"information_schema", "performance_schema", "mysql", "sys"}
INSERT_BATCH_SIZE = 100


class DumpResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    database: str
    path: Path
    size_bytes: int


class Dumper(Protocol):
    def dump(self, target: DatabaseTarget, database: str) -> DumpResult:
        ...


def escape_string(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\0", "\\0")
    )


def sql_literal(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        try:
            return f"'{escape_string(raw.decode('utf-8'))}'"
        except UnicodeDecodeError:
            return f"X'{raw.hex()}'"
    if isinstance(value, datetime):
        return f"'{value:%Y-%m-%d %H:%M:%S.%f}'"
    if isinstance(value, date):
        return f"'{value:%Y-%m-%d}'"
    if isinstance(value, time):
        return f"'{value:%H:%M:%S.%f}'"
    if isinstance(value, timedelta):
        seconds = int(value.total_seconds())
        sign = "-" if seconds < 0 else ""
        seconds = abs(seconds)
        return f"'{sign}{seconds // 3600}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}'"
    return f"'{escape_string(str(value))}'"


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MysqlDumper:
    def __init__(self, backup_dir, batch_size: int = INSERT_BATCH_SIZE, engine_factory=create_engine):
        self._backup_dir = Path(backup_dir)
        self._batch_size = batch_size
        self._engine_factory = engine_factory
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, target: DatabaseTarget) -> Engine:
        with self._lock:
            engine = self._engines.get(target.name)
            if engine is None:
                url = URL.create(
                    "mysql+pymysql",
                    username=target.username,
                    password=target.password or None,
                    host=target.host,
                    port=target.port,
                )
                engine = self._engine_factory(url, pool_pre_ping=True)
                self._engines[target.name] = engine
            return engine

    def _connect(self, target: DatabaseTarget):
        try:
            return self._engine(target).connect()
        except OperationalError as exc:
            raise DatabaseConnectionError(
                f"cannot connect to {target.host}:{target.port} ({target.name}): {exc.orig or exc}"
            ) from exc

    def test_connection(self, target: DatabaseTarget) -> None:
        logger.info("Testing MySQL connection to %s:%s", target.host, target.port)
        with self._connect(target) as conn:
            conn.execute(text("SELECT 1"))

    def list_databases(self, target: DatabaseTarget) -> list[str]:
        with self._connect(target) as conn:
            names = [row[0] for row in conn.execute(text("SHOW DATABASES"))]
        return [name for name in names if name not in SYSTEM_SCHEMAS]

    def dump(self, target: DatabaseTarget, database: str) -> DumpResult:
        output_dir = self._backup_dir / target.name
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        # jobs sharing a target and database may dump concurrently
        path = output_dir / f"{database}_{stamp}_{uuid.uuid4().hex[:8]}.sql"
        with self._connect(target) as conn:
            try:
                output_dir.mkdir(parents=True, exist_ok=True)
                with open(path, "w", encoding="utf-8") as handle:
                    self._write_dump(conn, database, handle)
            except (SQLAlchemyError, OSError) as exc:
                path.unlink(missing_ok=True)
                raise DumpError(f"failed to dump {database}: {exc}") from exc
        size = path.stat().st_size
        logger.info("Dumped %s.%s to %s (%d bytes)", target.name, database, path, size)
        return DumpResult(database=database, path=path, size_bytes=size)

    def _write_dump(self, conn, database: str, handle) -> None:
        handle.write(
            "-- MySQL dump generated by backupd\n"
            f"-- Database: {database}\n"
            f"-- Generated at: {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S UTC}\n\n"
            "SET FOREIGN_KEY_CHECKS=0;\n"
            "SET SQL_MODE='NO_AUTO_VALUE_ON_ZERO';\n\n"
        )
        schema = quote_identifier(database)
        tables = [row[0] for row in conn.execute(text(f"SHOW TABLES FROM {schema}"))]
        logger.debug("Found %d tables in database %s", len(tables), database)
        for table in tables:
            name = quote_identifier(table)
            handle.write(f"\n-- Table: {table}\n-- ----------------------------------------\n\n")
            handle.write(f"DROP TABLE IF EXISTS {name};\n\n")
            create = conn.execute(text(f"SHOW CREATE TABLE {schema}.{name}")).first()
            if create is None:
                raise DumpError(f"could not get CREATE TABLE for {database}.{table}")
            handle.write(f"{create[1]};\n\n")
            self._write_rows(conn, schema, name, handle)
        handle.write("\nSET FOREIGN_KEY_CHECKS=1;\n")

    def _write_rows(self, conn, schema: str, table: str, handle) -> None:
        result = conn.execute(text(f"SELECT * FROM {schema}.{table}"))
        columns = ", ".join(quote_identifier(column) for column in result.keys())
        while True:
            rows = result.fetchmany(self._batch_size)
            if not rows:
                break
            values = ",\n".join("(" + ", ".join(sql_literal(value) for value in row) + ")" for row in rows)
            handle.write(f"INSERT INTO {table} ({columns}) VALUES\n{values};\n\n")

    def dispose(self) -> None:
        with self._lock:
            engines, self._engines = list(self._engines.values()), {}
        for engine in engines:
            engine.dispose()


_DUMPERS = {
    DatabaseEngine.MYSQL: MysqlDumper,
}


class EngineDumper:
    """Routes each target to the dumper for its database engine."""

    def __init__(self, backup_dir):
        self._dumpers = {engine: factory(backup_dir) for engine, factory in _DUMPERS.items()}

    def for_target(self, target: DatabaseTarget):
        try:
            return self._dumpers[target.engine]
        except KeyError:
            raise DumpError(f"unsupported database engine: {target.engine}") from None

    def dump(self, target: DatabaseTarget, database: str) -> DumpResult:
        return self.for_target(target).dump(target, database)

    def test_connection(self, target: DatabaseTarget) -> None:
        self.for_target(target).test_connection(target)

    def list_databases(self, target: DatabaseTarget) -> list[str]:
        return self.for_target(target).list_databases(target)

    def dispose(self) -> None:
        for dumper in self._dumpers.values():
            dumper.dispose()


def create_dumper(backup_dir) -> EngineDumper:
    return EngineDumper(backup_dir)
