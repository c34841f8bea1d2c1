"""JSON file storage for vignettes and sessions.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON via pydantic.

Directory layout:

    {base}/
      config.json             ← application settings (see convo_sim.config)
      vignettes/
        {vignette_id}.json    ← VignetteConfig
      sessions/
        {session_id}.json     ← SessionState, rewritten after every turn
        {session_id}.lock     ← present only while a writer holds the session

Sessions are written with an optimistic version check: save_session()
refuses to overwrite a file whose stored version is not the one the caller
read. The read, compare and write happen while holding
sessions/{session_id}.lock, created with O_EXCL, so the check also holds
across several server processes sharing one data directory. A lock file
older than STALE_LOCK_AGE seconds is assumed to belong to a crashed writer
and is removed. Vignettes are read-only to the engine and cached per Storage
instance until the file changes on disk.
"""

from __future__ import annotations

import logging
import os
import re
import time
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from convo_sim.errors import (
    ConcurrentModificationError,
    ConfigurationError,
    InvalidRequestError,
    SessionBusyError,
    SessionNotFoundError,
    VignetteInactiveError,
    VignetteNotFoundError,
)
from convo_sim.models import SessionState, VignetteConfig
from convo_sim.prompts import validate_template

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

LOCK_TIMEOUT = 5.0
LOCK_POLL_INTERVAL = 0.02
STALE_LOCK_AGE = 30.0


def load_vignette(raw: str | bytes, source: str = "<input>") -> VignetteConfig:
    """Parse and validate a vignette document. Raises ConfigurationError."""
    try:
        vignette = VignetteConfig.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid vignette {source}: {e}") from e
    if vignette.system_prompt_template:
        validate_template(vignette.system_prompt_template)
    return vignette


class Storage:
    def __init__(self, base_path: Path, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self._base = base_path
        self._vignette_root = base_path / "vignettes"
        self._session_root = base_path / "sessions"
        self._vignette_root.mkdir(parents=True, exist_ok=True)
        self._session_root.mkdir(parents=True, exist_ok=True)
        self._vignettes: dict[str, tuple[float, VignetteConfig]] = {}
        self._lock_timeout = lock_timeout

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _check_id(self, kind: str, value: str) -> str:
        if not _SAFE_ID.match(value or ""):
            raise InvalidRequestError(f"Invalid {kind} id {value!r}")
        return value

    def _vignette_file(self, vignette_id: str) -> Path:
        return self._vignette_root / f"{self._check_id('vignette', vignette_id)}.json"

    def _session_file(self, session_id: str) -> Path:
        return self._session_root / f"{self._check_id('session', session_id)}.json"

    def _write(self, path: Path, text: str) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(text)
        os.replace(tmp, path)

    def _break_stale_lock(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < STALE_LOCK_AGE:
            return False
        logger.warning("Removing stale lock %s (%.0fs old)", path.name, age)
        path.unlink(missing_ok=True)
        return True

    @contextmanager
    def _session_lock(self, session_id: str):
        """Hold the session's lock file; raises SessionBusyError on timeout."""
        path = self._session_file(session_id).with_suffix(".lock")
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if self._break_stale_lock(path):
                    continue
                if time.monotonic() >= deadline:
                    raise SessionBusyError(f"Session {session_id} is locked by another writer")
                time.sleep(LOCK_POLL_INTERVAL)
        try:
            os.write(fd, str(os.getpid()).encode())
            yield
        finally:
            os.close(fd)
            path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Vignettes
    # ------------------------------------------------------------------

    def _load_vignette(self, path: Path) -> VignetteConfig:
        mtime = path.stat().st_mtime
        cached = self._vignettes.get(path.stem)
        if cached and cached[0] == mtime:
            return cached[1]
        vignette = load_vignette(path.read_text(), source=path.name)
        if vignette.id != path.stem:
            raise ConfigurationError(f"Vignette file {path.name} holds id {vignette.id!r}")
        self._vignettes[path.stem] = (mtime, vignette)
        return vignette

    def get_vignette(self, vignette_id: str, include_inactive: bool = False) -> VignetteConfig:
        try:
            path = self._vignette_file(vignette_id)
        except InvalidRequestError as e:
            raise VignetteNotFoundError(f"Vignette {vignette_id!r} not found") from e
        if not path.is_file():
            raise VignetteNotFoundError(f"Vignette {vignette_id!r} not found")
        vignette = self._load_vignette(path)
        if not vignette.active and not include_inactive:
            raise VignetteInactiveError(f"Vignette {vignette_id!r} is not active")
        return vignette

    def list_vignettes(self, include_inactive: bool = False) -> list[VignetteConfig]:
        """All loadable vignettes, sorted by id. Broken files are skipped with a warning."""
        result = []
        for path in sorted(self._vignette_root.glob("*.json")):
            try:
                vignette = self._load_vignette(path)
            except ConfigurationError as e:
                logger.warning("Skipping vignette file %s: %s", path.name, e)
                continue
            if vignette.active or include_inactive:
                result.append(vignette)
        return result

    def save_vignette(self, vignette: VignetteConfig) -> VignetteConfig:
        """Upsert a vignette by id."""
        path = self._vignette_file(vignette.id)
        if vignette.system_prompt_template:
            validate_template(vignette.system_prompt_template)
        self._write(path, vignette.model_dump_json(indent=2))
        self._vignettes.pop(vignette.id, None)
        return vignette

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, state: SessionState) -> SessionState:
        path = self._session_file(state.session_id)
        with self._session_lock(state.session_id):
            if path.exists():
                raise InvalidRequestError(f"Session {state.session_id} already exists")
            self._write(path, state.model_dump_json(indent=2))
        return state

    def get_session(self, session_id: str) -> SessionState:
        try:
            path = self._session_file(session_id)
        except InvalidRequestError as e:
            raise SessionNotFoundError(f"Session {session_id!r} not found") from e
        if not path.is_file():
            raise SessionNotFoundError(f"Session {session_id!r} not found")
        return SessionState.model_validate_json(path.read_text())

    def save_session(self, state: SessionState, expected_version: int) -> SessionState:
        """Write `state` if the stored copy is still at `expected_version`."""
        path = self._session_file(state.session_id)
        with self._session_lock(state.session_id):
            if not path.is_file():
                raise SessionNotFoundError(f"Session {state.session_id!r} not found")
            stored = SessionState.model_validate_json(path.read_text())
            if stored.version != expected_version:
                logger.warning(
                    "session=%s version conflict: stored=%d expected=%d",
                    state.session_id, stored.version, expected_version,
                )
                raise ConcurrentModificationError(state.session_id, expected_version, stored.version)
            self._write(path, state.model_dump_json(indent=2))
        return state


# ---------------------------------------------------------------------------
# Process-wide instance used by the web backend
# ---------------------------------------------------------------------------

_storage: Storage | None = None


def init_storage(data_dir: Path) -> Storage:
    global _storage
    data_dir.mkdir(parents=True, exist_ok=True)
    _storage = Storage(data_dir)
    return _storage


def get_storage() -> Storage:
    assert _storage is not None, "Call init_storage() before using storage"
    return _storage


def data_dir() -> Path:
    return get_storage().base_path
