import contextlib
import datetime
import sqlite3
import threading
import uuid
from typing import Any, Dict, Iterator, List, Optional

from ..core.frozen import FrozenTrial, StudyDirection, StudySummary, TrialState
from ..distributions import BaseDistribution, distribution_to_json, json_to_distribution
from ..exceptions import (
    DistributionConflictError,
    DuplicatedStudyError,
    NotFoundError,
    StorageError,
    TrialAlreadyFinishedError,
)
from ..log import get_logger
from .base import check_attr_value, check_param_value, select_best_trial

logger = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS studies (
        study_id INTEGER PRIMARY KEY AUTOINCREMENT,
        study_name TEXT NOT NULL UNIQUE,
        direction TEXT NOT NULL,
        datetime_start TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS study_user_attrs (
        study_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        UNIQUE (study_id, key),
        FOREIGN KEY (study_id) REFERENCES studies (study_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS study_system_attrs (
        study_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        UNIQUE (study_id, key),
        FOREIGN KEY (study_id) REFERENCES studies (study_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trials (
        trial_id INTEGER PRIMARY KEY AUTOINCREMENT,
        number INTEGER NOT NULL,
        study_id INTEGER NOT NULL,
        state TEXT NOT NULL,
        value REAL,
        datetime_start TEXT,
        datetime_complete TEXT,
        FOREIGN KEY (study_id) REFERENCES studies (study_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_params (
        param_id INTEGER PRIMARY KEY AUTOINCREMENT,
        trial_id INTEGER NOT NULL,
        param_name TEXT NOT NULL,
        param_value REAL NOT NULL,
        distribution_json TEXT NOT NULL,
        UNIQUE (trial_id, param_name),
        FOREIGN KEY (trial_id) REFERENCES trials (trial_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_user_attrs (
        trial_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        UNIQUE (trial_id, key),
        FOREIGN KEY (trial_id) REFERENCES trials (trial_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_system_attrs (
        trial_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        UNIQUE (trial_id, key),
        FOREIGN KEY (trial_id) REFERENCES trials (trial_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_values (
        trial_id INTEGER NOT NULL,
        step INTEGER NOT NULL,
        value REAL,
        UNIQUE (trial_id, step),
        FOREIGN KEY (trial_id) REFERENCES trials (trial_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trials_study ON trials (study_id)",
)


def _to_text(dt: Optional[datetime.datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _from_text(text: Optional[str]) -> Optional[datetime.datetime]:
    return datetime.datetime.fromisoformat(text) if text is not None else None


class SQLiteStorage:
    """
    A storage backend that uses SQLite for persistence.

    Args:
        database_url (str): The path to the SQLite database file, optionally
            prefixed with ``sqlite:///``. ``":memory:"`` keeps the database in
            process memory.
        timeout (float): Seconds to wait for a database lock held by another
            connection before raising ``StorageError``.

    Trial ids are allocated inside ``BEGIN IMMEDIATE`` transactions, so
    several processes sharing one database file still get unique ids.
    """
    def __init__(self, database_url: str, timeout: float = 10.0):
        if database_url.startswith("sqlite:///"):
            self.database_url = database_url[len("sqlite:///"):]
        else:
            self.database_url = database_url
        self.timeout = timeout
        self._lock = threading.RLock()
        self._local = threading.local()
        self._shared_conn: Optional[sqlite3.Connection] = None
        if self.database_url == ":memory:":
            # Each connection to ":memory:" is a separate database, so all
            # threads share one connection guarded by the lock.
            self._shared_conn = self._connect(check_same_thread=False)
        self._init_db()

    def _connect(self, check_same_thread: bool = True) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database_url,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=check_same_thread,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        if self.database_url != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """Establishes and returns a database connection."""
        if self._shared_conn is not None:
            return self._shared_conn
        if not hasattr(self._local, "conn"):
            self._local.conn = self._connect()
        return self._local.conn

    @contextlib.contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._get_conn()
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to open a transaction on {self.database_url}: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StorageError(f"Database operation failed: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    conn.execute("ROLLBACK")
                    raise StorageError(f"Failed to commit to {self.database_url}: {e}") from e

    def _init_db(self):
        """Initializes the database schema if it doesn't exist."""
        with self._transaction(immediate=True) as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # Studies

    def create_new_study(self, direction: StudyDirection, study_name: Optional[str] = None) -> int:
        if study_name is None:
            study_name = f"no-name-{uuid.uuid4()}"
        direction = StudyDirection.parse(direction)
        with self._transaction(immediate=True) as conn:
            exists = conn.execute(
                "SELECT 1 FROM studies WHERE study_name = ?", (study_name,)
            ).fetchone()
            if exists is not None:
                raise DuplicatedStudyError(f"Another study with name '{study_name}' already exists.")
            cursor = conn.execute(
                "INSERT INTO studies (study_name, direction, datetime_start) VALUES (?, ?, ?)",
                (study_name, direction.value, _to_text(datetime.datetime.now())),
            )
            study_id = cursor.lastrowid
        logger.debug("Created study '%s' with ID %d.", study_name, study_id)
        return study_id

    def get_study_id_from_name(self, study_name: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT study_id FROM studies WHERE study_name = ?", (study_name,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"No such study {study_name}.")
        return row["study_id"]

    def get_study_name_from_id(self, study_id: int) -> str:
        with self._transaction() as conn:
            return self._get_study_row(conn, study_id)["study_name"]

    def get_study_direction(self, study_id: int) -> StudyDirection:
        with self._transaction() as conn:
            return StudyDirection(self._get_study_row(conn, study_id)["direction"])

    def set_study_user_attr(self, study_id: int, key: str, value: str) -> None:
        self._set_study_attr("study_user_attrs", study_id, key, value)

    def get_study_user_attrs(self, study_id: int) -> Dict[str, str]:
        with self._transaction() as conn:
            self._get_study_row(conn, study_id)
            return self._read_attrs(conn, "study_user_attrs", "study_id", study_id)

    def set_study_system_attr(self, study_id: int, key: str, value: str) -> None:
        self._set_study_attr("study_system_attrs", study_id, key, value)

    def get_study_system_attrs(self, study_id: int) -> Dict[str, str]:
        with self._transaction() as conn:
            self._get_study_row(conn, study_id)
            return self._read_attrs(conn, "study_system_attrs", "study_id", study_id)

    def get_all_study_summaries(self) -> List[StudySummary]:
        with self._transaction() as conn:
            study_rows = conn.execute("SELECT * FROM studies ORDER BY study_id").fetchall()
            summaries = []
            for row in study_rows:
                direction = StudyDirection(row["direction"])
                trials = self._read_trials(conn, row["study_id"])
                try:
                    best_trial: Optional[FrozenTrial] = select_best_trial(trials, direction)
                except ValueError:
                    best_trial = None
                summaries.append(StudySummary(
                    study_id=row["study_id"],
                    study_name=row["study_name"],
                    direction=direction,
                    n_trials=len(trials),
                    best_trial=best_trial,
                    user_attrs=self._read_attrs(conn, "study_user_attrs", "study_id", row["study_id"]),
                    system_attrs=self._read_attrs(conn, "study_system_attrs", "study_id", row["study_id"]),
                    datetime_start=_from_text(row["datetime_start"]),
                ))
        return summaries

    # Trials

    def create_new_trial_id(self, study_id: int) -> int:
        with self._transaction(immediate=True) as conn:
            self._get_study_row(conn, study_id)
            number = conn.execute(
                "SELECT COUNT(*) FROM trials WHERE study_id = ?", (study_id,)
            ).fetchone()[0]
            cursor = conn.execute(
                "INSERT INTO trials (number, study_id, state, datetime_start) VALUES (?, ?, ?, ?)",
                (number, study_id, TrialState.RUNNING.value, _to_text(datetime.datetime.now())),
            )
            return cursor.lastrowid

    def set_trial_state(self, trial_id: int, state: TrialState) -> None:
        with self._transaction(immediate=True) as conn:
            self._get_updatable_trial_row(conn, trial_id)
            completed = _to_text(datetime.datetime.now()) if state.is_finished() else None
            conn.execute(
                "UPDATE trials SET state = ?, datetime_complete = ? WHERE trial_id = ?",
                (state.value, completed, trial_id),
            )

    def set_trial_value(self, trial_id: int, value: float) -> None:
        with self._transaction(immediate=True) as conn:
            self._get_updatable_trial_row(conn, trial_id)
            conn.execute("UPDATE trials SET value = ? WHERE trial_id = ?", (value, trial_id))

    def set_trial_intermediate_value(self, trial_id: int, step: int, value: float) -> None:
        with self._transaction(immediate=True) as conn:
            self._get_updatable_trial_row(conn, trial_id)
            conn.execute(
                "INSERT OR REPLACE INTO trial_values (trial_id, step, value) VALUES (?, ?, ?)",
                (trial_id, step, value),
            )

    def set_trial_param(
        self, trial_id: int, param_name: str, param_value_internal: float, distribution: BaseDistribution
    ) -> bool:
        with self._transaction(immediate=True) as conn:
            self._get_updatable_trial_row(conn, trial_id)
            row = conn.execute(
                "SELECT distribution_json FROM trial_params WHERE trial_id = ? AND param_name = ?",
                (trial_id, param_name),
            ).fetchone()
            if row is not None:
                recorded = json_to_distribution(row["distribution_json"])
                if recorded != distribution:
                    raise DistributionConflictError(
                        f"Parameter `{param_name}` of trial {trial_id} is already recorded with "
                        f"{recorded}, cannot record it with {distribution}."
                    )
                return False

            check_param_value(param_name, param_value_internal, distribution)
            conn.execute(
                "INSERT INTO trial_params (trial_id, param_name, param_value, distribution_json) "
                "VALUES (?, ?, ?, ?)",
                (trial_id, param_name, param_value_internal, distribution_to_json(distribution)),
            )
            return True

    def get_trial_params(self, trial_id: int) -> Dict[str, Any]:
        return self.get_trial(trial_id).params

    def set_trial_user_attr(self, trial_id: int, key: str, value: str) -> None:
        self._set_trial_attr("trial_user_attrs", trial_id, key, value)

    def get_trial_user_attrs(self, trial_id: int) -> Dict[str, str]:
        with self._transaction() as conn:
            self._get_trial_row(conn, trial_id)
            return self._read_attrs(conn, "trial_user_attrs", "trial_id", trial_id)

    def set_trial_system_attr(self, trial_id: int, key: str, value: str) -> None:
        self._set_trial_attr("trial_system_attrs", trial_id, key, value)

    def get_trial_system_attrs(self, trial_id: int) -> Dict[str, str]:
        with self._transaction() as conn:
            self._get_trial_row(conn, trial_id)
            return self._read_attrs(conn, "trial_system_attrs", "trial_id", trial_id)

    def get_trial(self, trial_id: int) -> FrozenTrial:
        with self._transaction() as conn:
            row = self._get_trial_row(conn, trial_id)
            return self._build_trial(conn, row)

    def get_trial_number_from_id(self, trial_id: int) -> int:
        with self._transaction() as conn:
            return self._get_trial_row(conn, trial_id)["number"]

    def get_all_trials(self, study_id: int) -> List[FrozenTrial]:
        with self._transaction() as conn:
            self._get_study_row(conn, study_id)
            return self._read_trials(conn, study_id)

    def get_best_trial(self, study_id: int) -> FrozenTrial:
        with self._transaction() as conn:
            direction = StudyDirection(self._get_study_row(conn, study_id)["direction"])
            return select_best_trial(self._read_trials(conn, study_id), direction)

    # Helpers; callers hold a transaction.

    def _set_study_attr(self, table: str, study_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._transaction(immediate=True) as conn:
            self._get_study_row(conn, study_id)
            conn.execute(
                f"INSERT OR REPLACE INTO {table} (study_id, key, value) VALUES (?, ?, ?)",
                (study_id, key, value),
            )

    def _set_trial_attr(self, table: str, trial_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._transaction(immediate=True) as conn:
            self._get_trial_row(conn, trial_id)
            conn.execute(
                f"INSERT OR REPLACE INTO {table} (trial_id, key, value) VALUES (?, ?, ?)",
                (trial_id, key, value),
            )

    @staticmethod
    def _read_attrs(conn: sqlite3.Connection, table: str, id_column: str, id_value: int) -> Dict[str, str]:
        rows = conn.execute(
            f"SELECT key, value FROM {table} WHERE {id_column} = ? ORDER BY rowid", (id_value,)
        ).fetchall()
        return {row["key"]: row["value"] for row in rows}

    @staticmethod
    def _get_study_row(conn: sqlite3.Connection, study_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM studies WHERE study_id = ?", (study_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No study with study_id {study_id} exists.")
        return row

    @staticmethod
    def _get_trial_row(conn: sqlite3.Connection, trial_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM trials WHERE trial_id = ?", (trial_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No trial with trial_id {trial_id} exists.")
        return row

    def _get_updatable_trial_row(self, conn: sqlite3.Connection, trial_id: int) -> sqlite3.Row:
        row = self._get_trial_row(conn, trial_id)
        state = TrialState(row["state"])
        if state.is_finished():
            raise TrialAlreadyFinishedError(
                f"Trial {trial_id} has already finished with state {state.name} and cannot be updated."
            )
        return row

    def _read_trials(self, conn: sqlite3.Connection, study_id: int) -> List[FrozenTrial]:
        rows = conn.execute(
            "SELECT * FROM trials WHERE study_id = ? ORDER BY trial_id", (study_id,)
        ).fetchall()
        return [self._build_trial(conn, row) for row in rows]

    def _build_trial(self, conn: sqlite3.Connection, row: sqlite3.Row) -> FrozenTrial:
        trial_id = row["trial_id"]
        trial = FrozenTrial(
            trial_id=trial_id,
            study_id=row["study_id"],
            number=row["number"],
            state=TrialState(row["state"]),
            value=row["value"],
            datetime_start=_from_text(row["datetime_start"]),
            datetime_complete=_from_text(row["datetime_complete"]),
            user_attrs=self._read_attrs(conn, "trial_user_attrs", "trial_id", trial_id),
            system_attrs=self._read_attrs(conn, "trial_system_attrs", "trial_id", trial_id),
        )

        param_rows = conn.execute(
            "SELECT param_name, param_value, distribution_json FROM trial_params "
            "WHERE trial_id = ? ORDER BY param_id",
            (trial_id,),
        ).fetchall()
        for param_row in param_rows:
            name = param_row["param_name"]
            distribution = json_to_distribution(param_row["distribution_json"])
            trial.distributions[name] = distribution
            trial.internal_params[name] = param_row["param_value"]
            trial.params[name] = distribution.to_external_repr(param_row["param_value"])

        value_rows = conn.execute(
            "SELECT step, value FROM trial_values WHERE trial_id = ? ORDER BY step", (trial_id,)
        ).fetchall()
        # SQLite stores NaN as NULL.
        trial.intermediate_values = {
            r["step"]: r["value"] if r["value"] is not None else float("nan") for r in value_rows
        }
        return trial
