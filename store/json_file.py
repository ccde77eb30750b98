"""
JSON-file State Store - durable variant of the in-memory store.
JSON 文件状态存储 —— 内存存储的持久化版本。

After every mutation the full snapshot is written to a temporary file and
atomically renamed over STATE_FILE, so a crash mid-write never leaves a
half-written state file behind.
每次变更后，完整快照先写入临时文件，再原子地重命名覆盖 STATE_FILE，
因此写入过程中崩溃也不会留下半截文件。

Several processes may share one file (the CLI and a running scheduler), so
every read and write runs as:
多个进程（CLI 与正在运行的调度器）可以共享同一个文件，因此每次读写的流程为：
  1. take the exclusive lock on `<STATE_FILE>.lock`
  2. reload the snapshot if the file changed since this process last saw it
     (write token kept in the lock file, plus inode / mtime / size)
  3. read or mutate, then write the snapshot back before releasing the lock
  1. 获取 `<STATE_FILE>.lock` 上的排他锁
  2. 若文件自上次读写后被其他进程修改（锁文件中的写入令牌或 inode / mtime / size 不同），重新加载
  3. 读取或修改，写回快照后释放锁
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import config
from schema import DagRun, TaskInstance, XComEntry, utcnow
from store.memory import InMemoryStateStore

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class JsonFileStateStore(InMemoryStateStore):
    """
    Write-through JSON snapshot store, shareable between processes.
    写穿式 JSON 快照存储，可在多个进程之间共享。
    """

    def __init__(self, path: str | None = None):
        super().__init__()
        self._path = path or config.STATE_FILE   # 快照文件路径
        self._lock_path = f"{self._path}.lock"
        self._lock_file = None                   # 持有文件锁期间打开的锁文件
        self._depth = 0                          # _guard 的重入深度
        self._seen: tuple | None = None          # 最近一次读/写时的 (写入令牌, 文件签名)
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        with self._guard():
            pass

    @property
    def path(self) -> str:
        return self._path

    # ------------------------------------------------------------------
    # Inter-process locking
    # 进程间加锁
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            if self._depth == 0:
                self._acquire_file_lock()
            self._depth += 1
            try:
                if self._depth == 1:
                    self._refresh()
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._release_file_lock()

    def _acquire_file_lock(self) -> None:
        fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        lock_file = os.fdopen(fd, "r+", encoding="utf-8")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        except BaseException:
            lock_file.close()
            raise
        self._lock_file = lock_file

    def _release_file_lock(self) -> None:
        lock_file, self._lock_file = self._lock_file, None
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()

    def _version(self) -> tuple | None:
        """
        (write token, file signature). Every save stores a fresh token in the
        lock file; the stat signature catches writers that bypass the lock.
        （写入令牌, 文件签名）。每次保存都会向锁文件写入新令牌；stat 签名用于发现绕过锁的写入。
        """
        try:
            st = os.stat(self._path)
        except FileNotFoundError:
            return None
        self._lock_file.seek(0)
        token = self._lock_file.read().strip()
        return token, st.st_ino, st.st_mtime_ns, st.st_size

    def _refresh(self) -> None:
        """Reload when another process wrote the file. / 其他进程写过文件时重新加载。"""
        version = self._version()
        if version is None or version == self._seen:
            return
        self._load(version)

    # ------------------------------------------------------------------
    # Persistence
    # 持久化
    # ------------------------------------------------------------------

    def _load(self, version: tuple) -> None:
        """
        Replace the in-memory state with the snapshot on disk. An unreadable
        file is moved aside and the current in-memory state is kept (empty on
        first load).
        用磁盘快照替换内存状态。文件无法解析时将其改名保留，并保留当前内存状态（首次加载时为空）。
        """
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            runs = [DagRun.model_validate(r) for r in data.get("dag_runs", [])]
            tis = [TaskInstance.model_validate(t) for t in data.get("task_instances", [])]
            xcoms = [XComEntry.model_validate(x) for x in data.get("xcoms", [])]
            paused = {str(k): bool(v) for k, v in data.get("paused", {}).items()}
        except (OSError, ValueError) as exc:
            broken = f"{self._path}.corrupt-{utcnow().strftime('%Y%m%dT%H%M%S')}"
            logger.warning("[Store] Failed to load %s (%s); moved it to %s", self._path, exc, broken)
            os.replace(self._path, broken)
            self._seen = None
            return

        self._runs = {r.run_id: r for r in runs}
        self._task_instances = {r.run_id: {} for r in runs}
        for ti in tis:
            self._task_instances.setdefault(ti.run_id, {})[ti.task_id] = ti
        self._xcoms = {x.store_key: x for x in xcoms}
        self._paused = paused
        self._seen = version
        logger.debug("[Store] Loaded %d DAG runs from %s", len(runs), self._path)

    def _snapshot(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "dag_runs": [r.model_dump(mode="json") for r in self._runs.values()],
            "task_instances": [
                ti.model_dump(mode="json")
                for tis in self._task_instances.values()
                for ti in tis.values()
            ],
            "xcoms": [x.model_dump(mode="json") for x in self._xcoms.values()],
            "paused": dict(self._paused),
        }

    def _save(self) -> None:
        """
        Atomic write: temp file in the same directory, then os.replace.
        原子写入：先写同目录下的临时文件，再 os.replace 覆盖。
        """
        directory = os.path.dirname(os.path.abspath(self._path))
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._snapshot(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self._lock_file.seek(0)
        self._lock_file.truncate()
        self._lock_file.write(uuid.uuid4().hex)
        self._lock_file.flush()
        self._seen = self._version()

    def _mutated(self) -> None:
        self._save()

    def flush(self) -> None:
        with self._guard():
            self._save()
