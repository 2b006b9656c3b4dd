#!/usr/bin/env python3
# project_viewer: Terminal project browser backed by a remote project API
#
# Hotkeys (ui)
#   j/k  select next/previous local project
#   n    new project (asks for a name)
#   R    rename the open project
#   i    import a project from pasted JSON (enter to import, esc to cancel)
#   x    delete the open project (press twice to confirm)
#   p    toggle the public flag of the open project
#   e    export the open project as JSON into the export directory
#   u    upload the open project to the server
#   r    refresh the remote project list
#   ]/[  move the remote cursor
#   L    pull the remote project under the cursor into a new local project
#   q    quit
#
# Command line
#   project-viewer login --email me@example.com
#   project-viewer list
#   project-viewer pull 42 --output project.json
#   project-viewer push project.json --name "My project"
#   project-viewer ui --open project.json
#
# Config highlights (optional YAML, --config PATH)
#   api_base: "http://localhost:1337/api"
#   state_path: "~/.project_viewer.state.json"
#   log_path: "~/.project_viewer.log"
#   log_level: "INFO"
#
# Notes
# - Every request is one-shot: no retries, no client-side timeout.
# - Logging out always clears the local session, even if the server call fails.
#
# Environment
# - PROJECT_API_BASE (optional, overrides api_base from the config file)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import os
import queue
import re
import sys
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit import prompt as pt_prompt
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


LOG_NAME = 'project_viewer'
API_BASE = "http://localhost:1337/api"
SESSION_HEADER = "Session"
SESSION_STATE_KEY = "client"
DEFAULT_PROJECT_NAME = "Unnamed"
IMPORTED_PROJECT_NAME = "JSON import"
DEFAULT_STATE_PATH = os.path.expanduser("~/.project_viewer.state.json")
DEFAULT_LOG_PATH = os.path.expanduser("~/.project_viewer.log")


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    api_base: str = API_BASE
    state_path: str = DEFAULT_STATE_PATH
    log_path: str = DEFAULT_LOG_PATH
    log_level: str = "ERROR"


def load_config(path: Optional[str] = None) -> Config:
    """Read the optional YAML config; PROJECT_API_BASE wins over the file."""
    cfg = Config()
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config: top level must be a mapping.")
        api_base = raw.get("api_base", cfg.api_base)
        if not isinstance(api_base, str) or not api_base.strip():
            raise ValueError("Config: 'api_base' must be a non-empty string.")
        cfg.api_base = api_base.strip()
        if raw.get("state_path"):
            cfg.state_path = os.path.expanduser(str(raw["state_path"]))
        if raw.get("log_path"):
            cfg.log_path = os.path.expanduser(str(raw["log_path"]))
        if raw.get("log_level"):
            cfg.log_level = str(raw["log_level"])
    env_base = os.environ.get("PROJECT_API_BASE")
    if env_base:
        cfg.api_base = env_base.strip()
    cfg.api_base = cfg.api_base.rstrip("/")
    return cfg


def setup_logging(log_path: str, log_level: str = 'ERROR') -> logging.Logger:
    logger = logging.getLogger(LOG_NAME)
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    # Logger stays at DEBUG; the handler filters by the requested level.
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(log_path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(threadName)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Payload codec
# -----------------------------
class ProjectImportError(ValueError):
    pass


def export_payload(data: object) -> str:
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)


def import_payload(text: str) -> object:
    if not text or not text.strip():
        raise ProjectImportError("Nothing to import.")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProjectImportError(f"line {exc.lineno}, column {exc.colno}: {exc.msg}") from exc


# -----------------------------
# Busy counter and notifications
# -----------------------------
class LoadingCounter:
    """Number of requests in flight; the UI shows busy while it is non-zero."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def start_loading(self) -> None:
        with self._lock:
            self._count += 1

    def loading_done(self) -> None:
        with self._lock:
            if self._count > 0:
                self._count -= 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def is_loading(self) -> bool:
        return self.count > 0


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    detail: Optional[str] = None
    created_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    def text(self) -> str:
        return f"{self.message} {self.detail}" if self.detail else self.message


class Notifications:
    """User-visible message sink shared by the UI and transport threads."""

    def __init__(self, limit: int = 50) -> None:
        self._lock = threading.Lock()
        self._items: Deque[Notification] = deque(maxlen=limit)
        self.on_change: Optional[Callable[[], None]] = None

    def success(self, message: str) -> None:
        logging.getLogger(LOG_NAME).info(message)
        self._push(Notification('success', message))

    def error(self, message: str, detail: Optional[str] = None) -> None:
        logging.getLogger(LOG_NAME).warning("%s %s", message, detail or '')
        self._push(Notification('error', message, detail))

    def _push(self, note: Notification) -> None:
        with self._lock:
            self._items.append(note)
        if self.on_change is not None:
            self.on_change()

    def latest(self) -> Optional[Notification]:
        with self._lock:
            return self._items[-1] if self._items else None

    def items(self) -> List[Notification]:
        with self._lock:
            return list(self._items)


# -----------------------------
# Session
# -----------------------------
@dataclass(frozen=True)
class Session:
    id: str


@dataclass(frozen=True)
class UserIdentity:
    email: str
    id: int
    session: Session

    def to_json(self) -> Dict[str, object]:
        return {"email": self.email, "id": self.id, "session": {"id": self.session.id}}

    @classmethod
    def from_json(cls, raw: object) -> "UserIdentity":
        email = _field(raw, "email", str)
        user_id = _field(raw, "id", int)
        session = _field(raw, "session", dict)
        return cls(email=email, id=user_id, session=Session(_field(session, "id", str)))


class SessionStore:
    """Holds at most one signed-in identity, mirrored to a JSON state file.

    Reads happen on the UI thread before each request; writes may come from
    transport threads, so both go through one lock. The file is rewritten
    after every replace() and read once by load().
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._user: Optional[UserIdentity] = None

    @classmethod
    def load(cls, path: Optional[str]) -> "SessionStore":
        store = cls(path)
        store._user = store._read()
        return store

    def get(self) -> Optional[UserIdentity]:
        with self._lock:
            return self._user

    def replace(self, user: Optional[UserIdentity]) -> None:
        with self._lock:
            self._user = user
            self._write(user)

    def _read(self) -> Optional[UserIdentity]:
        if not self.path or not os.path.isfile(self.path):
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            blob = data.get(SESSION_STATE_KEY) or {}
            raw = blob.get("user_data")
            return UserIdentity.from_json(raw) if raw is not None else None
        except (OSError, ValueError, AttributeError):
            logging.getLogger(LOG_NAME).warning("Ignoring unreadable session state %s", self.path, exc_info=True)
            return None

    def _write(self, user: Optional[UserIdentity]) -> None:
        if not self.path:
            return
        data = {SESSION_STATE_KEY: {"user_data": user.to_json() if user else None}}
        try:
            d = os.path.dirname(self.path)
            if d and not os.path.isdir(d):
                os.makedirs(d, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
        except OSError:
            logging.getLogger(LOG_NAME).warning("Unable to write session state %s", self.path, exc_info=True)


# -----------------------------
# Local projects
# -----------------------------
_ID_LOCK = threading.Lock()
_LAST_ID_MS = 0


def new_project_id() -> uuid.UUID:
    """Time-ordered UUIDv7: 48-bit unix milliseconds followed by random bits.

    The millisecond part never moves backwards within the process, and the
    74 random bits keep ids created in the same millisecond apart.
    """
    global _LAST_ID_MS
    with _ID_LOCK:
        ms = max(time.time_ns() // 1_000_000, _LAST_ID_MS)
        _LAST_ID_MS = ms
    rand = int.from_bytes(os.urandom(10), 'big')
    rand_a = (rand >> 68) & 0xFFF
    rand_b = rand & ((1 << 62) - 1)
    value = ((ms & 0xFFFFFFFFFFFF) << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    return uuid.UUID(int=value)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class LocalProject:
    name: str
    data: object = field(default_factory=dict)
    is_owned: bool = True
    is_public: bool = False
    id: uuid.UUID = field(default_factory=new_project_id)
    created_at: dt.datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class NewProject:
    name: str
    data: object = None


@dataclass(frozen=True)
class ReplaceData:
    data: object


@dataclass(frozen=True)
class SelectProject:
    id: uuid.UUID


@dataclass(frozen=True)
class RenameProject:
    name: str


@dataclass(frozen=True)
class TogglePublic:
    pass


@dataclass(frozen=True)
class DeleteCurrent:
    pass


MutationCommand = Union[NewProject, ReplaceData, SelectProject, RenameProject, TogglePublic, DeleteCurrent]
_COMMAND_TYPES = (NewProject, ReplaceData, SelectProject, RenameProject, TogglePublic, DeleteCurrent)


class ProjectMutationQueue:
    """FIFO of commands; any thread may send, only the UI thread drains."""

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[MutationCommand]" = queue.SimpleQueue()

    def send(self, command: MutationCommand) -> None:
        if not isinstance(command, _COMMAND_TYPES):
            raise TypeError(f"Not a project command: {command!r}")
        self._queue.put(command)

    def drain(self) -> List[MutationCommand]:
        out: List[MutationCommand] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def pending(self) -> int:
        return self._queue.qsize()


class ProjectsHandle:
    """Write access to the project store for code outside the UI thread."""

    def __init__(self, mutations: ProjectMutationQueue) -> None:
        self._mutations = mutations

    def update_project(self, data: object) -> None:
        self._mutations.send(ReplaceData(data=data))

    def send(self, command: MutationCommand) -> None:
        self._mutations.send(command)


class ProjectStore:
    """Local project collection plus the id of the open project.

    Only the UI thread calls apply()/process_pending(). Every other producer
    goes through the mutation queue. The collection is never empty and
    open_project always names one of its entries.
    """

    def __init__(self, mutations: Optional[ProjectMutationQueue] = None) -> None:
        self.mutations = mutations if mutations is not None else ProjectMutationQueue()
        self.projects: List[LocalProject] = []
        self.open_project: Optional[uuid.UUID] = None
        self.apply(NewProject(name=DEFAULT_PROJECT_NAME))

    def handle(self) -> ProjectsHandle:
        return ProjectsHandle(self.mutations)

    def current(self) -> LocalProject:
        for p in self.projects:
            if p.id == self.open_project:
                return p
        raise LookupError(f"Open project {self.open_project} is missing")

    def process_pending(self) -> int:
        commands = self.mutations.drain()
        for command in commands:
            self.apply(command)
        return len(commands)

    def apply(self, command: MutationCommand) -> None:
        if isinstance(command, NewProject):
            project = LocalProject(name=command.name)
            if command.data is not None:
                project.data = command.data
            self.projects.append(project)
            self.open_project = project.id
        elif isinstance(command, ReplaceData):
            self.current().data = command.data
        elif isinstance(command, SelectProject):
            if any(p.id == command.id for p in self.projects):
                self.open_project = command.id
        elif isinstance(command, RenameProject):
            self.current().name = command.name
        elif isinstance(command, TogglePublic):
            current = self.current()
            current.is_public = not current.is_public
        elif isinstance(command, DeleteCurrent):
            doomed = self.open_project
            if len(self.projects) == 1:
                # The replacement goes in before the last project leaves.
                self.apply(NewProject(name=DEFAULT_PROJECT_NAME))
            self.projects = [p for p in self.projects if p.id != doomed]
            if self.open_project == doomed:
                self.open_project = self.projects[0].id
        else:
            raise TypeError(f"Not a project command: {command!r}")

    def import_text(self, text: str, name: str = IMPORTED_PROJECT_NAME) -> None:
        self.mutations.send(NewProject(name=name, data=import_payload(text)))

    def export_current(self) -> str:
        return export_payload(self.current().data)


# -----------------------------
# App context
# -----------------------------
@dataclass
class AppContext:
    """Every piece of state shared between the UI and transport threads."""
    session: SessionStore
    loading: LoadingCounter = field(default_factory=LoadingCounter)
    notifications: Notifications = field(default_factory=Notifications)
    mutations: ProjectMutationQueue = field(default_factory=ProjectMutationQueue)

    @classmethod
    def from_config(cls, cfg: Config) -> "AppContext":
        return cls(session=SessionStore.load(cfg.state_path))


# -----------------------------
# Remote API: errors, outcomes, decoders
# -----------------------------
class ApiError(Exception):
    """A single API request did not produce a usable result."""


class TransportFailure(ApiError):
    pass


class HttpError(ApiError):
    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status


class DecodeError(ApiError):
    pass


@dataclass(frozen=True)
class Outcome:
    """Result of one request: exactly one of value/error is meaningful."""
    value: object = None
    error: Optional[ApiError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _field(raw: object, name: str, kind: type) -> object:
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, found {type(raw).__name__}")
    if name not in raw:
        raise ValueError(f"missing field `{name}`")
    value = raw[name]
    # bool is an int subclass; ids and counts must be real integers.
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise ValueError(f"invalid type for `{name}`: expected {kind.__name__}, found {type(value).__name__}")
    return value


_FRACTION_RE = re.compile(r"^([^.]*)\.(\d+)(.*)$")


def _parse_timestamp(raw: object, name: str = "created_at") -> dt.datetime:
    if not isinstance(raw, str):
        raise ValueError(f"invalid type for `{name}`: expected timestamp string")
    text = raw.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits; servers may send 1 to 9.
    m = _FRACTION_RE.match(text)
    if m:
        text = f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}{m.group(3)}"
    try:
        value = dt.datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"invalid timestamp for `{name}`: {raw!r}") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class ProjectEntry:
    id: int
    name: str
    is_public: bool
    created_at: dt.datetime

    @classmethod
    def from_json(cls, raw: object) -> "ProjectEntry":
        return cls(
            id=_field(raw, "id", int),
            name=_field(raw, "name", str),
            is_public=_field(raw, "is_public", bool),
            created_at=_parse_timestamp(_field(raw, "created_at", str)),
        )


@dataclass(frozen=True)
class RemoteProject:
    id: int
    user_id: int
    name: str
    data: object
    is_public: bool
    created_at: dt.datetime

    @classmethod
    def from_json(cls, raw: object) -> "RemoteProject":
        return cls(
            id=_field(raw, "id", int),
            user_id=_field(raw, "user_id", int),
            name=_field(raw, "name", str),
            data=_field(raw, "data", object),
            is_public=_field(raw, "is_public", bool),
            created_at=_parse_timestamp(_field(raw, "created_at", str)),
        )


def decode_ack(raw: object) -> None:
    # Ack endpoints answer with an empty body or JSON null, nothing else.
    if raw is not None:
        raise ValueError(f"expected null, found {type(raw).__name__}")
    return None


def decode_entries(raw: object) -> List[ProjectEntry]:
    if not isinstance(raw, list):
        raise ValueError(f"expected a JSON array, found {type(raw).__name__}")
    return [ProjectEntry.from_json(item) for item in raw]


def decode_project_id(raw: object) -> int:
    return _field(raw, "project_id", int)


def _invoke(callback: Optional[Callable[..., None]], *args: object) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logging.getLogger(LOG_NAME).exception("Completion handler %r raised", callback)


# -----------------------------
# Request dispatcher
# -----------------------------
class RequestDispatcher:
    """Issues one-shot JSON requests on worker threads.

    issue() returns a Future that always resolves to an Outcome (it never
    carries an exception). The optional on_done/on_success/on_error hooks are
    derived from that single Outcome on the worker thread: on_done always
    runs, then exactly one of on_success/on_error. None of them run inside
    issue() itself.
    """

    def __init__(
        self,
        ctx: AppContext,
        api_base: str = API_BASE,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.ctx = ctx
        self.api_base = api_base.rstrip('/')
        self.http = http if http is not None else requests.Session()
        # One thread per request; nothing caps how many are in flight.
        self._threads: set = set()
        self._lock = threading.Lock()
        self._closed = False

    def close(self) -> None:
        with self._lock:
            self._closed = True
            pending = list(self._threads)
        for t in pending:
            t.join()
        self.http.close()

    def get_json(self, path: str, **kwargs) -> "Future[Outcome]":
        return self.issue("GET", path, **kwargs)

    def post_json(self, path: str, body: object, **kwargs) -> "Future[Outcome]":
        return self.issue("POST", path, body, **kwargs)

    def issue(
        self,
        method: str,
        path: str,
        body: object = None,
        *,
        decode: Callable[[object], object] = decode_ack,
        on_done: Optional[Callable[[], None]] = None,
        on_success: Optional[Callable[[object], None]] = None,
        on_error: Optional[Callable[[ApiError], None]] = None,
    ) -> "Future[Outcome]":
        method = method.upper()
        if method not in ("GET", "POST"):
            raise ValueError(f"Unsupported method {method}")
        url = f"{self.api_base}/{path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        payload = None
        if method == "POST":
            # Unserializable bodies fail here, before anything is counted as loading.
            payload = json.dumps(body)
            headers["Content-Type"] = "application/json"

        future: "Future[Outcome]" = Future()
        worker = threading.Thread(
            target=self._run,
            args=(future, method, url, headers, payload, decode, on_done, on_success, on_error),
            name=f"api-{method.lower()}",
            daemon=True,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is closed")
            self._threads.add(worker)
        self.ctx.loading.start_loading()
        user = self.ctx.session.get()
        if user is not None:
            headers[SESSION_HEADER] = user.session.id
        logging.getLogger(LOG_NAME).debug("%s %s (session=%s)", method, url, user is not None)
        try:
            worker.start()
        except RuntimeError:
            with self._lock:
                self._threads.discard(worker)
            self.ctx.loading.loading_done()
            raise
        return future

    def _run(self, future, method, url, headers, payload, decode, on_done, on_success, on_error) -> None:
        try:
            future.set_result(self._fetch(method, url, headers, payload, decode, on_done, on_success, on_error))
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    def _fetch(self, method, url, headers, payload, decode, on_done, on_success, on_error) -> Outcome:
        try:
            outcome = self._request(method, url, headers, payload, decode)
        except Exception as exc:
            logging.getLogger(LOG_NAME).exception("%s %s failed unexpectedly", method, url)
            outcome = Outcome(error=TransportFailure(str(exc) or exc.__class__.__name__))
        finally:
            self.ctx.loading.loading_done()

        _invoke(on_done)
        if outcome.ok:
            _invoke(on_success, outcome.value)
        else:
            logging.getLogger(LOG_NAME).warning("%s %s: %s: %s", method, url, type(outcome.error).__name__, outcome.error)
            self.ctx.notifications.error("Api request failed.", str(outcome.error))
            _invoke(on_error, outcome.error)
        return outcome

    def _request(self, method, url, headers, payload, decode) -> Outcome:
        try:
            resp = self.http.request(method, url, data=payload, headers=headers)
        except requests.RequestException as exc:
            return Outcome(error=TransportFailure(str(exc) or exc.__class__.__name__))
        text = resp.text or ""
        if resp.status_code != 200:
            return Outcome(error=HttpError(resp.status_code, text))
        if not text.strip():
            if decode is decode_ack:
                return Outcome(value=None)
            return Outcome(error=DecodeError("Response was empty."))
        try:
            value = decode(json.loads(text))
        except (ValueError, TypeError, KeyError) as exc:
            return Outcome(error=DecodeError(f"Could not decode Api response: {exc}"))
        return Outcome(value=value)


# -----------------------------
# API client
# -----------------------------
class ApiClient:
    """Typed operations of the project server.

    This is the only writer of the session store. Errors never reach the
    caller as exceptions; they are routed through the notification sink by
    the dispatcher and show up as a failed Outcome.
    """

    def __init__(self, ctx: AppContext, dispatcher: RequestDispatcher) -> None:
        self.ctx = ctx
        self.dispatcher = dispatcher

    def user_data(self) -> Optional[UserIdentity]:
        return self.ctx.session.get()

    def signup(self, email: str, password: str, on_done: Optional[Callable[[Optional[Session]], None]] = None) -> "Future[Outcome]":
        return self._authenticate("user/create", email, password, on_done)

    def login(self, email: str, password: str, on_done: Optional[Callable[[Optional[Session]], None]] = None) -> "Future[Outcome]":
        return self._authenticate("user/login", email, password, on_done)

    def _authenticate(self, path, email, password, on_done) -> "Future[Outcome]":
        def decode(raw: object) -> UserIdentity:
            return UserIdentity(
                email=email,
                id=_field(raw, "user_id", int),
                session=Session(_field(raw, "session_id", str)),
            )

        def success(user: UserIdentity) -> None:
            self.ctx.session.replace(user)
            _invoke(on_done, user.session)

        return self.dispatcher.post_json(
            path,
            {"email": email, "password": password},
            decode=decode,
            on_success=success,
            on_error=lambda _err: _invoke(on_done, None),
        )

    def logout(self, on_done: Optional[Callable[[], None]] = None) -> "Future[Outcome]":
        def clear() -> None:
            # Cleared whatever the server answered; there is nothing to roll back to.
            self.ctx.session.replace(None)
            _invoke(on_done)

        return self.dispatcher.post_json("user/logout", None, on_done=clear)

    def create_project(self, name: str, data: object, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        body = {"name": name, "data": data, "is_public": False}
        return self.dispatcher.post_json(
            "project/create", body, decode=decode_project_id,
            on_done=on_done, on_success=on_success, on_error=on_error,
        )

    def list_projects(self, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        return self.dispatcher.get_json(
            "projects", decode=decode_entries,
            on_done=on_done, on_success=on_success, on_error=on_error,
        )

    def load_project(self, project_id: int, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        return self.dispatcher.get_json(
            f"project/{project_id}", decode=RemoteProject.from_json,
            on_done=on_done, on_success=on_success, on_error=on_error,
        )

    def set_project_public(self, project_id: int, is_public: bool, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        return self.dispatcher.post_json(
            f"project/{project_id}/public", bool(is_public),
            on_done=on_done, on_success=on_success, on_error=on_error,
        )

    def set_project_data(self, project_id: int, data: object, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        return self.dispatcher.post_json(
            f"project/{project_id}/data", data,
            on_done=on_done, on_success=on_success, on_error=on_error,
        )

    def set_project_name(self, project_id: int, name: str, on_done=None, on_success=None, on_error=None) -> "Future[Outcome]":
        return self.dispatcher.post_json(
            f"project/{project_id}/name", name,
            on_done=on_done, on_success=on_success, on_error=on_error,
        )


def pull_into_store(api: ApiClient, handle: ProjectsHandle, project_id: int, on_done: Optional[Callable[[], None]] = None) -> "Future[Outcome]":
    """Load a remote project and queue it as a new local one.

    The queue write happens on the transport thread; the store picks it up on
    its next UI pass.
    """
    def success(project: RemoteProject) -> None:
        handle.send(NewProject(name=project.name, data=project.data))
        api.ctx.notifications.success(f"Pulled project `{project.name}` (#{project.id}).")

    return api.load_project(project_id, on_done=on_done, on_success=success)


# -----------------------------
# Terminal UI
# -----------------------------
UI_STYLE = {
    'table.header': 'bold #ffd75f',
    'table.open': 'reverse',
    'table.public': '#87ff5f',
    'remote.cursor': 'bold #87d7ff',
    'status': 'bg:#303030 #f0f0f0',
    'status.busy': 'bg:#303030 bold #ffd75f',
    'status.error': 'bg:#303030 bold #ff8787',
    'status.success': 'bg:#303030 #87ff5f',
}

INPUT_PROMPTS = {
    'new': "New project name: ",
    'rename': "Rename to: ",
    'import': "Paste project JSON (enter imports, esc cancels): ",
}


def _truncate(s: str, maxlen: int) -> str:
    if len(s) <= maxlen:
        return s
    return s[:max(0, maxlen - 1)] + "…"


def _fmt_local(ts: dt.datetime) -> str:
    return ts.astimezone().strftime("%Y-%m-%d %H:%M")


def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return cleaned or "project"


def build_ui(ctx: AppContext, api: ApiClient, store: ProjectStore, export_dir: Optional[str] = None) -> Application:
    status_line = ""
    confirm_delete = False
    input_mode: Optional[str] = None
    input_buffer = ""
    remote_entries: List[ProjectEntry] = []
    remote_index = 0
    app: Optional[Application] = None
    export_dir = export_dir or os.getcwd()
    handle = store.handle()
    logger = logging.getLogger(LOG_NAME)

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    ctx.notifications.on_change = invalidate

    def build_local_fragments() -> List[Tuple[str, str]]:
        frags: List[Tuple[str, str]] = [('class:table.header', f"  {'Name':<32} {'Created':<16} Public\n")]
        for p in store.projects:
            style = 'class:table.open' if p.id == store.open_project else ''
            mark = '✔' if p.is_public else ''
            frags.append((style, f"  {_truncate(p.name, 32):<32} {_fmt_local(p.created_at):<16} {mark}\n"))
        return frags

    def build_remote_fragments() -> List[Tuple[str, str]]:
        if not remote_entries:
            return [('', "  (press r to load the remote project list)\n")]
        frags: List[Tuple[str, str]] = []
        for i, entry in enumerate(remote_entries):
            style = 'class:remote.cursor' if i == remote_index else ''
            mark = '✔' if entry.is_public else ''
            frags.append((style, f"  #{entry.id:<6} {_truncate(entry.name, 32):<32} {_fmt_local(entry.created_at):<16} {mark}\n"))
        return frags

    def build_status() -> List[Tuple[str, str]]:
        user = ctx.session.get()
        who = user.email if user else "not signed in"
        frags: List[Tuple[str, str]] = [('class:status', f" {who} ")]
        if ctx.loading.is_loading:
            frags.append(('class:status.busy', f" busy ({ctx.loading.count}) "))
        if status_line:
            frags.append(('class:status', f" {status_line} "))
        else:
            note = ctx.notifications.latest()
            if note is not None:
                frags.append((f'class:status.{note.level}', f" {note.text()} "))
        return frags

    def before_render(_app) -> None:
        # Queued commands land before anything reads project state this pass.
        store.process_pending()

    kb = KeyBindings()
    is_input = Condition(lambda: input_mode is not None)
    is_normal = Condition(lambda: input_mode is None)

    def _disarm_delete() -> None:
        nonlocal confirm_delete, status_line
        if confirm_delete:
            confirm_delete = False
            status_line = ""

    def _show_prompt() -> None:
        nonlocal status_line
        shown = input_buffer.replace('\n', ' ')
        status_line = f"{INPUT_PROMPTS[input_mode]}{_truncate(shown, 60)}"
        invalidate()

    def open_input(mode: str, initial: str = "") -> None:
        nonlocal input_mode, input_buffer
        _disarm_delete()
        input_mode = mode
        input_buffer = initial
        _show_prompt()

    def close_input(message: str = "") -> None:
        nonlocal input_mode, input_buffer, status_line
        input_mode = None
        input_buffer = ""
        status_line = message
        invalidate()

    def commit_input() -> None:
        nonlocal status_line
        if input_mode == 'import':
            try:
                store.import_text(input_buffer)
            except ProjectImportError as exc:
                # Dialog stays open so the text can be fixed.
                ctx.notifications.error("Could not import JSON", str(exc))
                status_line = f"Could not import JSON ({exc}). {INPUT_PROMPTS['import']}"
                invalidate()
                return
            close_input()
            return
        name = input_buffer.strip()
        if not name:
            status_line = f"Name cannot be empty. {INPUT_PROMPTS[input_mode]}"
            invalidate()
            return
        if input_mode == 'new':
            store.mutations.send(NewProject(name=name))
        else:
            store.mutations.send(RenameProject(name=name))
        close_input()

    @kb.add(Keys.Any, filter=is_input)
    @kb.add(Keys.BracketedPaste, filter=is_input)
    def _(event):
        nonlocal input_buffer
        data = event.data or ""
        if data.startswith('\x1b'):
            return
        data = data.replace('\r\n', '\n').replace('\r', '\n')
        if input_mode != 'import':
            data = data.replace('\n', ' ')
        data = ''.join(c for c in data if c.isprintable() or c in '\n\t')
        if not data:
            return
        input_buffer += data
        _show_prompt()

    @kb.add('backspace', filter=is_input)
    def _(event):
        nonlocal input_buffer
        if input_buffer:
            input_buffer = input_buffer[:-1]
            _show_prompt()

    @kb.add('enter', filter=is_input)
    def _(event):
        commit_input()

    @kb.add('escape', filter=is_input)
    def _(event):
        close_input("Cancelled")

    def _move(delta: int) -> None:
        _disarm_delete()
        ids = [p.id for p in store.projects]
        i = ids.index(store.open_project)
        j = max(0, min(len(ids) - 1, i + delta))
        store.mutations.send(SelectProject(id=ids[j]))
        invalidate()

    @kb.add('j', filter=is_normal)
    @kb.add('down', filter=is_normal)
    def _(event):
        _move(1)

    @kb.add('k', filter=is_normal)
    @kb.add('up', filter=is_normal)
    def _(event):
        _move(-1)

    @kb.add('n', filter=is_normal)
    def _(event):
        open_input('new')

    @kb.add('R', filter=is_normal)
    def _(event):
        open_input('rename', store.current().name)

    @kb.add('i', filter=is_normal)
    def _(event):
        open_input('import')

    @kb.add('x', filter=is_normal)
    def _(event):
        nonlocal confirm_delete, status_line
        if not confirm_delete:
            confirm_delete = True
            status_line = f"Delete `{store.current().name}`? Press x again to confirm."
        else:
            confirm_delete = False
            status_line = ""
            store.mutations.send(DeleteCurrent())
        invalidate()

    @kb.add('p', filter=is_normal)
    def _(event):
        _disarm_delete()
        store.mutations.send(TogglePublic())
        invalidate()

    @kb.add('e', filter=is_normal)
    def _(event):
        _disarm_delete()
        current = store.current()
        path = os.path.join(export_dir, _safe_filename(current.name) + ".json")
        try:
            with open(path, 'w', encoding='utf-8') as f:
                f.write(store.export_current())
        except OSError as exc:
            ctx.notifications.error("Could not export project.", str(exc))
            return
        ctx.notifications.success(f"Exported project `{current.name}` to {path}.")

    @kb.add('u', filter=is_normal)
    def _(event):
        _disarm_delete()
        current = store.current()
        name = current.name

        def uploaded(project_id: int) -> None:
            ctx.notifications.success(f"Uploaded project `{name}` as #{project_id}.")

        api.create_project(name, current.data, on_done=invalidate, on_success=uploaded)
        invalidate()

    async def refresh_remote() -> None:
        nonlocal remote_entries, remote_index
        outcome = await asyncio.wrap_future(api.list_projects())
        if outcome.ok:
            remote_entries = list(outcome.value)
            remote_index = min(remote_index, max(0, len(remote_entries) - 1))
            logger.info("Loaded %d remote projects", len(remote_entries))
        invalidate()

    @kb.add('r', filter=is_normal)
    def _(event):
        _disarm_delete()
        event.app.create_background_task(refresh_remote())
        invalidate()

    @kb.add(']', filter=is_normal)
    def _(event):
        nonlocal remote_index
        _disarm_delete()
        if remote_entries:
            remote_index = min(len(remote_entries) - 1, remote_index + 1)
        invalidate()

    @kb.add('[', filter=is_normal)
    def _(event):
        nonlocal remote_index
        _disarm_delete()
        remote_index = max(0, remote_index - 1)
        invalidate()

    @kb.add('L', filter=is_normal)
    def _(event):
        _disarm_delete()
        if not remote_entries:
            ctx.notifications.error("No remote project selected.", "Press r to load the list first.")
            return
        pull_into_store(api, handle, remote_entries[remote_index].id, on_done=invalidate)
        invalidate()

    @kb.add('q', filter=is_normal)
    @kb.add('c-c')
    def _(event):
        event.app.exit()

    root = HSplit([
        Frame(Window(FormattedTextControl(build_local_fragments), height=Dimension(min=3)), title="Projects"),
        Frame(Window(FormattedTextControl(build_remote_fragments), height=Dimension(min=3)), title="Remote"),
        Window(FormattedTextControl(build_status), height=1, style='class:status'),
    ])
    app = Application(
        layout=Layout(root),
        key_bindings=kb,
        style=Style.from_dict(UI_STYLE),
        full_screen=True,
        before_render=before_render,
    )
    return app


def run_ui(ctx: AppContext, api: ApiClient, store: ProjectStore, export_dir: Optional[str] = None) -> None:
    build_ui(ctx, api, store, export_dir=export_dir).run()


# -----------------------------
# CLI
# -----------------------------
def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    return pt_prompt("Password: ", is_password=True)


def _wait(future: "Future[Outcome]") -> Outcome:
    outcome = future.result()
    if not outcome.ok:
        print(f"Error: {outcome.error}", file=sys.stderr)
    return outcome


def _read_text(path: str) -> str:
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="project-viewer", description="Browse and sync projects with the project server")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--api-base", help="Override the API base URL")
    ap.add_argument("--state", help="Path to the session state file")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    sub = ap.add_subparsers(dest="command")

    for name, help_text in (("signup", "Create an account and sign in"), ("login", "Sign in")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--email", required=True)
        p.add_argument("--password", help="Read interactively when omitted")

    sub.add_parser("logout", help="Sign out (the local session is always cleared)")
    sub.add_parser("whoami", help="Show the signed-in user")
    sub.add_parser("list", help="List remote projects")

    p = sub.add_parser("pull", help="Download a project's data as JSON")
    p.add_argument("project_id", type=int)
    p.add_argument("--output", help="Write to this file instead of stdout")

    p = sub.add_parser("push", help="Create a remote project from a JSON file")
    p.add_argument("file")
    p.add_argument("--name", required=True)

    p = sub.add_parser("publish", help="Make a project public (or private)")
    p.add_argument("project_id", type=int)
    p.add_argument("--private", action="store_true")

    p = sub.add_parser("rename", help="Rename a remote project")
    p.add_argument("project_id", type=int)
    p.add_argument("name")

    p = sub.add_parser("set-data", help="Replace a remote project's data from a JSON file")
    p.add_argument("project_id", type=int)
    p.add_argument("file")

    p = sub.add_parser("ui", help="Interactive project browser (default)")
    p.add_argument("--open", action="append", default=[], metavar="FILE", help="Import a JSON file as a local project")
    p.add_argument("--export-dir", help="Directory for exported projects (default: cwd)")
    return ap


def run_command(args: argparse.Namespace, ctx: AppContext, api: ApiClient) -> int:
    cmd = args.command or "ui"

    if cmd in ("signup", "login"):
        op = api.signup if cmd == "signup" else api.login
        outcome = _wait(op(args.email, _read_password(args)))
        if not outcome.ok:
            return 1
        print(f"Signed in as {outcome.value.email} (user #{outcome.value.id})")
        return 0

    if cmd == "logout":
        _wait(api.logout())
        print("Signed out")
        return 0

    if cmd == "whoami":
        user = api.user_data()
        if user is None:
            print("Not signed in")
            return 1
        print(f"{user.email} (user #{user.id})")
        return 0

    if cmd == "list":
        outcome = _wait(api.list_projects())
        if not outcome.ok:
            return 1
        for entry in outcome.value:
            public = "public" if entry.is_public else "private"
            print(f"#{entry.id:<6} {entry.name:<32} {public:<8} {_fmt_local(entry.created_at)}")
        return 0

    if cmd == "pull":
        outcome = _wait(api.load_project(args.project_id))
        if not outcome.ok:
            return 1
        text = export_payload(outcome.value.data)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(text)
            print(f"Wrote project `{outcome.value.name}` to {args.output}")
        else:
            print(text)
        return 0

    if cmd in ("push", "set-data"):
        try:
            data = import_payload(_read_text(args.file))
        except (OSError, ProjectImportError) as e:
            print(f"Could not import JSON: {e}", file=sys.stderr)
            return 2
        if cmd == "push":
            outcome = _wait(api.create_project(args.name, data))
            if outcome.ok:
                print(f"Created project #{outcome.value}")
        else:
            outcome = _wait(api.set_project_data(args.project_id, data))
            if outcome.ok:
                print(f"Updated data of project #{args.project_id}")
        return 0 if outcome.ok else 1

    if cmd == "publish":
        outcome = _wait(api.set_project_public(args.project_id, not args.private))
        if outcome.ok:
            state = "private" if args.private else "public"
            print(f"Project #{args.project_id} is now {state}")
        return 0 if outcome.ok else 1

    if cmd == "rename":
        outcome = _wait(api.set_project_name(args.project_id, args.name))
        if outcome.ok:
            print(f"Renamed project #{args.project_id} to {args.name}")
        return 0 if outcome.ok else 1

    if cmd == "ui":
        store = ProjectStore(ctx.mutations)
        for path in getattr(args, "open", []) or []:
            try:
                store.import_text(_read_text(path))
            except (OSError, ProjectImportError) as e:
                ctx.notifications.error("Could not import JSON", f"{path}: {e}")
        run_ui(ctx, api, store, export_dir=getattr(args, "export_dir", None))
        return 0

    raise ValueError(f"Unknown command {cmd}")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(2)
    if args.api_base:
        cfg.api_base = args.api_base.rstrip("/")
    if args.state:
        cfg.state_path = args.state
    if args.log_level:
        cfg.log_level = args.log_level
    setup_logging(cfg.log_path, cfg.log_level)

    ctx = AppContext.from_config(cfg)
    dispatcher = RequestDispatcher(ctx, cfg.api_base)
    api = ApiClient(ctx, dispatcher)
    try:
        code = run_command(args, ctx, api)
    finally:
        dispatcher.close()
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
