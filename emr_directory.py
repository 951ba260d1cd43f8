"""
emr_directory.py
----------------
FHT Message Service — EMR Import Directory Resolver
---------------------------------------------------
Finds the directory each EMR product imports HL7 results from.

Lookup order for one EMR kind:
  1. ``output_dir_override`` from the effective config, for every kind.
  2. The EMR's own database:
       BestPractice     REPORTPATHS       active row for this computer
       MedicalDirector  MD_UPDOWN_CONFIG  enabled, SDI-enabled, not deleted
  3. Anything else is ``UnsupportedEmr``.

Database access goes through small repository objects so tests (and other
deployments) can inject their own.  The SQLAlchemy repositories open a
short-lived engine per lookup and dispose it before returning; no
connection outlives the call.

Connection strings are either SQLAlchemy URLs (``sqlite:///bp.db``,
``mssql+pyodbc://…``) or the ODBC-style strings the Windows installer
writes (``Server=.\\BPSINSTANCE;Database=BPSPatients;…``), which are wrapped
as ``mssql+pyodbc`` with ``odbc_connect``.

Public API:
    to_sqlalchemy_url()             Connection string → SQLAlchemy URL.
    BestPracticePathRepository      ``lookup_path(hostname)``.
    MedicalDirectorPathRepository   ``lookup_path()``.
    default_repositories()          Repositories for an EffectiveConfig.
    DirectoryResolver               ``resolve(emr_kind) -> Path`` with caching.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
import socket
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Generator, Optional, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection
from typing_extensions import Protocol

from config_resolver import EffectiveConfig
from errors import DirectoryError, DirectoryNotFound, UnsupportedEmr
from schemas import EmrKind

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = "ODBC Driver 17 for SQL Server"

# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
_BP_REPORT_PATHS_SQL = text(
    "SELECT RECORDID, COMPUTER, REPORTPATH FROM REPORTPATHS "
    "WHERE RECORDSTATUS = 1 ORDER BY RECORDID"
)

_MD_IMPORT_DIRECTORY_SQL = text(
    "SELECT IMPORT_DIRECTORY FROM MD_UPDOWN_CONFIG "
    "WHERE ENABLED = 'Y' AND SDI_ENABLED = 'Y' "
    "AND (STAMP_ACTIONCODE IS NULL OR STAMP_ACTIONCODE <> 'D')"
)


def to_sqlalchemy_url(connection_string: str) -> Union[str, URL]:
    """
    Normalise a configured connection string for ``create_engine``.

    URLs (anything containing ``://``) are returned unchanged.  ODBC strings
    become ``mssql+pyodbc`` URLs; a ``Driver=`` entry is prepended when the
    string does not name one.
    """
    value = connection_string.strip()
    if "://" in value:
        return value
    if "driver=" not in value.lower():
        value = f"Driver={{{DEFAULT_ODBC_DRIVER}}};{value}"
    return URL.create("mssql+pyodbc", query={"odbc_connect": value})


@contextmanager
def _connect(connection_string: str) -> Generator[Connection, None, None]:
    """Yield a connection from a throwaway engine, disposing it afterwards."""
    engine = create_engine(to_sqlalchemy_url(connection_string))
    try:
        with engine.connect() as conn:
            yield conn
    finally:
        engine.dispose()


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class BestPracticeRepository(Protocol):
    def lookup_path(self, hostname: str) -> Optional[str]:
        ...


class MedicalDirectorRepository(Protocol):
    def lookup_path(self) -> Optional[str]:
        ...


class BestPracticePathRepository:
    """Reads the BestPractice ``REPORTPATHS`` table."""

    def __init__(self, connection_string: str) -> None:
        self.connection_string = connection_string

    def lookup_path(self, hostname: str) -> Optional[str]:
        """
        Return the report path of the lowest-id active row whose COMPUTER
        matches *hostname* (trimmed, case-insensitive), or ``None``.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: the database cannot be queried.
        """
        wanted = hostname.strip().casefold()
        with _connect(self.connection_string) as conn:
            for row in conn.execute(_BP_REPORT_PATHS_SQL):
                computer = (row.COMPUTER or "").strip().casefold()
                if computer == wanted:
                    return row.REPORTPATH
        return None


class MedicalDirectorPathRepository:
    """Reads the MedicalDirector HCN ``MD_UPDOWN_CONFIG`` table."""

    def __init__(self, connection_string: str) -> None:
        self.connection_string = connection_string

    def lookup_path(self) -> Optional[str]:
        """
        Raises:
            sqlalchemy.exc.SQLAlchemyError: the database cannot be queried.
        """
        with _connect(self.connection_string) as conn:
            row = conn.execute(_MD_IMPORT_DIRECTORY_SQL).first()
        return row.IMPORT_DIRECTORY if row is not None else None


Repository = Union[BestPracticeRepository, MedicalDirectorRepository]
RepositoryFactory = Callable[[EffectiveConfig], Dict[str, Repository]]


def default_repositories(config: EffectiveConfig) -> Dict[str, Repository]:
    """SQLAlchemy repositories for every EMR kind with a connection string."""
    repositories: Dict[str, Repository] = {}
    bp = config.connection_string(EmrKind.BEST_PRACTICE.value)
    if bp:
        repositories[EmrKind.BEST_PRACTICE.value] = BestPracticePathRepository(bp)
    md = config.connection_string(EmrKind.MEDICAL_DIRECTOR.value)
    if md:
        repositories[EmrKind.MEDICAL_DIRECTOR.value] = MedicalDirectorPathRepository(md)
    return repositories


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class DirectoryResolver:
    """
    Resolves and caches the import directory per EMR kind for one cycle.

    Failures are cached as well, so a group whose database is down is
    queried once per cycle, not once per record.
    """

    def __init__(
        self,
        config: EffectiveConfig,
        repositories: Optional[Dict[str, Repository]] = None,
        hostname: Optional[str] = None,
    ) -> None:
        self.config = config
        self.repositories = repositories if repositories is not None else default_repositories(config)
        self.hostname = hostname or socket.gethostname()
        self._cache: Dict[str, Union[Path, DirectoryError]] = {}

    def resolve(self, emr_kind: str) -> Path:
        """
        Return the import directory for *emr_kind*.

        Raises:
            UnsupportedEmr:    the kind has no directory lookup.
            DirectoryNotFound: no connection string, no matching row, or a
                               database error.
        """
        cached = self._cache.get(emr_kind)
        if cached is None:
            try:
                cached = self._lookup(emr_kind)
                logger.info("emr_directory: %s messages go to '%s'.", emr_kind or "<none>", cached)
            except DirectoryError as exc:
                logger.error("emr_directory: %s", exc)
                cached = exc
            self._cache[emr_kind] = cached

        if isinstance(cached, DirectoryError):
            raise cached
        return cached

    def _lookup(self, emr_kind: str) -> Path:
        override = self.config.output_dir_override
        if override:
            return Path(override)

        kind = EmrKind.parse(emr_kind)
        if kind is None:
            raise UnsupportedEmr(emr_kind)

        repository = self.repositories.get(kind.value)
        if repository is None:
            raise DirectoryNotFound(kind.value, "no database connection string configured")

        try:
            if kind is EmrKind.BEST_PRACTICE:
                path = repository.lookup_path(self.hostname)
            else:
                path = repository.lookup_path()
        except Exception as exc:
            # Includes a missing database driver, not only query errors.
            raise DirectoryNotFound(kind.value, f"database lookup failed: {exc}") from exc

        if not path or not path.strip():
            where = f" for computer '{self.hostname}'" if kind is EmrKind.BEST_PRACTICE else ""
            raise DirectoryNotFound(kind.value, f"no active import directory configured{where}")
        return Path(path.strip())
