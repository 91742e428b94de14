"""SQLite 客户端。"""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence
from urllib.parse import quote

Params = Sequence[Any] | Mapping[str, Any]


class DatabaseError(RuntimeError):
    """数据库访问失败。"""


@dataclass(slots=True)
class SQLiteClient:
    """带锁重试的 SQLite 客户端。

    读操作在 locked/busy 时按线性退避重试；写操作不重试。
    transaction() 以 BEGIN IMMEDIATE 开启事务，同一时刻只有一个写事务，
    事务内的所有调用复用当前线程的连接。
    """

    db_path: Path | str
    busy_timeout_ms: int = 3_000
    lock_timeout_ms: int = 30_000
    max_retries: int = 3
    retry_backoff_seconds: float = 0.05
    _db_uri: str = field(init=False, repr=False)
    _local: threading.local = field(init=False, repr=False, default_factory=threading.local)

    def __post_init__(self) -> None:
        resolved_path = Path(self.db_path).expanduser().resolve()
        self.db_path = resolved_path
        encoded_path = quote(str(resolved_path), safe="/")
        self._db_uri = f"file:{encoded_path}"

    def execute_query(self, sql: str, params: Params | None = None) -> list[sqlite3.Row]:
        """执行查询。"""

        bound_params: Params = () if params is None else params
        connection = self._active_connection()
        if connection is not None:
            try:
                return self._run_query(connection, sql, bound_params)
            except sqlite3.Error as exc:
                raise DatabaseError(f"SQLite read failed in transaction: {exc}") from exc

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return self._execute_once(sql, bound_params)
            except sqlite3.OperationalError as exc:
                if not self._is_retryable(exc) or attempt >= self.max_retries:
                    raise DatabaseError(
                        f"SQLite read failed after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                sleep_seconds = self.retry_backoff_seconds * (attempt + 1)
                time.sleep(sleep_seconds)

        raise DatabaseError("SQLite read failed unexpectedly.")

    def execute_write(self, sql: str, params: Params | None = None) -> int:
        """执行写语句，返回影响行数。"""

        cursor_rowcount, _ = self._write(sql, () if params is None else params)
        return cursor_rowcount

    def execute_insert(self, sql: str, params: Params | None = None) -> int:
        """执行插入，返回新行 ID。"""

        _, lastrowid = self._write(sql, () if params is None else params)
        return lastrowid

    def execute_script(self, script: str) -> None:
        """执行多条 DDL。"""

        try:
            with closing(self._connect(self.busy_timeout_ms)) as connection:
                connection.executescript(script)
        except sqlite3.Error as exc:
            raise DatabaseError(f"SQLite script failed: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """独占写事务；嵌套调用复用外层事务。"""

        if self._active_connection() is not None:
            yield
            return

        connection = self._connect(self.lock_timeout_ms)
        try:
            try:
                connection.execute("BEGIN IMMEDIATE;")
            except sqlite3.OperationalError as exc:
                raise DatabaseError(f"SQLite write lock not acquired: {exc}") from exc
            self._local.connection = connection
            try:
                yield
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            try:
                connection.execute("COMMIT;")
            except sqlite3.Error as exc:
                raise DatabaseError(f"SQLite commit failed: {exc}") from exc
        finally:
            self._local.connection = None
            connection.close()

    def _write(self, sql: str, params: Params) -> tuple[int, int]:
        """执行单条写语句。"""

        connection = self._active_connection()
        try:
            if connection is not None:
                cursor = connection.execute(sql, params)
                return cursor.rowcount, cursor.lastrowid or 0
            with closing(self._connect(self.busy_timeout_ms)) as standalone:
                cursor = standalone.execute(sql, params)
                return cursor.rowcount, cursor.lastrowid or 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"SQLite write failed: {exc}") from exc

    def _execute_once(self, sql: str, params: Params) -> list[sqlite3.Row]:
        """执行单次查询。"""

        with closing(self._connect(self.busy_timeout_ms)) as connection:
            return self._run_query(connection, sql, params)

    def _run_query(
        self,
        connection: sqlite3.Connection,
        sql: str,
        params: Params,
    ) -> list[sqlite3.Row]:
        cursor = connection.execute(sql, params)
        rows = cursor.fetchall()
        cursor.close()
        return rows

    def _connect(self, busy_timeout_ms: int) -> sqlite3.Connection:
        """打开自动提交模式连接。"""

        connection = sqlite3.connect(self._db_uri, uri=True, isolation_level=None)
        connection.row_factory = sqlite3.Row
        connection.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def _active_connection(self) -> sqlite3.Connection | None:
        return getattr(self._local, "connection", None)

    @staticmethod
    def _is_retryable(exc: sqlite3.OperationalError) -> bool:
        """判断是否可重试。"""

        message = str(exc).lower()
        return "locked" in message or "busy" in message
