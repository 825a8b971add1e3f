"""Apply ordered ``*.sql`` migration files.

Run with ``python -m signal_desk.core.migrations [DIR]``. Each file runs in
its own transaction. A file whose objects already exist is recorded as
skipped, which makes re-running the whole directory safe; any other
database error stops the run and the process exits with status 1.
"""
import asyncio
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from signal_desk.core.config import get_config

logger = logging.getLogger(__name__)

# duplicate_column, duplicate_table
ALREADY_APPLIED_SQLSTATES = {"42701", "42P07"}
ALREADY_APPLIED_MESSAGES = ("already exists", "duplicate column name")

_DOLLAR_TAG = re.compile(r"\$[A-Za-z_]*\$")


@dataclass
class MigrationReport:
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"{len(self.executed)} executed, {len(self.skipped)} skipped"


class MigrationError(RuntimeError):
    def __init__(self, filename: str, cause: Exception):
        super().__init__(f"Migration {filename} failed: {cause}")
        self.filename = filename
        self.cause = cause


def split_statements(sql: str) -> List[str]:
    """Split a script on top-level ``;``, honouring quotes, ``$$`` bodies and comments."""
    statements: List[str] = []
    buf: List[str] = []
    quote: Optional[str] = None
    dollar_tag: Optional[str] = None
    i, n = 0, len(sql)

    while i < n:
        ch = sql[i]
        if dollar_tag:
            if sql.startswith(dollar_tag, i):
                buf.append(dollar_tag)
                i += len(dollar_tag)
                dollar_tag = None
            else:
                buf.append(ch)
                i += 1
            continue
        if quote:
            buf.append(ch)
            i += 1
            if ch == quote:
                quote = None
            continue
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        if ch in ("'", '"'):
            quote = ch
            buf.append(ch)
            i += 1
            continue
        if ch == "$":
            match = _DOLLAR_TAG.match(sql, i)
            if match:
                dollar_tag = match.group(0)
                buf.append(dollar_tag)
                i = match.end()
                continue
        if ch == ";":
            statement = "".join(buf).strip()
            if statement:
                statements.append(statement)
            buf = []
            i += 1
            continue
        buf.append(ch)
        i += 1

    tail = "".join(buf).strip()
    if tail:
        statements.append(tail)
    return statements


def is_already_applied(exc: Exception) -> bool:
    orig = getattr(exc, "orig", None) or exc
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in ALREADY_APPLIED_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(text in message for text in ALREADY_APPLIED_MESSAGES)


def migration_files(directory: Path) -> List[Path]:
    return sorted(p for p in Path(directory).iterdir() if p.suffix == ".sql" and p.is_file())


async def run_migrations(engine: AsyncEngine, directory: Optional[Path] = None) -> MigrationReport:
    directory = Path(directory or get_config().MIGRATIONS_DIR)
    report = MigrationReport()

    for path in migration_files(directory):
        statements = split_statements(path.read_text(encoding="utf-8"))
        logger.info(f"Running migration: {path.name}...")
        try:
            async with engine.begin() as conn:
                for statement in statements:
                    await conn.exec_driver_sql(statement)
        except DBAPIError as e:
            if is_already_applied(e):
                logger.info(f"{path.name} skipped (already applied)")
                report.skipped.append(path.name)
                continue
            raise MigrationError(path.name, e) from e

        logger.info(f"{path.name} completed successfully")
        report.executed.append(path.name)

    logger.info(f"Migration complete: {report.summary()}")
    return report


async def _main(directory: Optional[str]) -> int:
    engine = create_async_engine(get_config().DATABASE_URL)
    try:
        await run_migrations(engine, Path(directory) if directory else None)
        return 0
    except MigrationError as e:
        logger.error(f"Migration failed: {e}")
        return 1
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=get_config().LOG_LEVEL, format="%(levelname)s %(message)s")
    args = sys.argv[1:] if argv is None else argv
    return asyncio.run(_main(args[0] if args else None))


if __name__ == "__main__":
    sys.exit(main())
