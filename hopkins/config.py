from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from hopkins.chain import MAX_CHAIN_DEPTH, resolve_chains
from hopkins.errors import ConfigError, ParseError
from hopkins.models import (
    DEFAULT_CONCURRENCY,
    ChainLink,
    DatabaseSpec,
    Generation,
    LoadStatus,
    QueueSpec,
    Task,
)
from hopkins.schedule import compute_occurrence_set

module_logger = logging.getLogger(__name__)

StateSignature = Tuple[bool, int, int]


class FileMonitor:
    """Polling change detector for a single file."""

    def __init__(self, path: Path):
        self.path = path
        self._signature = self._stat()

    def _stat(self) -> StateSignature:
        try:
            stat = self.path.stat()
        except OSError:
            return (False, 0, 0)
        return (True, stat.st_mtime_ns, stat.st_size)

    def scan(self) -> bool:
        current = self._stat()
        changed = current != self._signature
        self._signature = current
        return changed


def parse_document(text: str) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ParseError(str(exc)) from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ParseError("Top-level config must be a mapping.")
    return payload


def _optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"{field_path} must be a string")
    text = str(value).strip()
    return text or None


def _mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{field_path} must be a mapping")
    return value


def normalize_queue(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def normalize_enabled(value: Any) -> bool:
    if value is False:
        return False
    if isinstance(value, str) and value.strip().lower() == "no":
        return False
    return True


def normalize_options(raw: Any, field_path: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if not isinstance(raw, list):
        raise ConfigError(f"{field_path} must be a mapping or a list of name/value pairs")
    options: Dict[str, Any] = {}
    for idx, item in enumerate(raw):
        if isinstance(item, dict) and "name" in item:
            unknown = set(item.keys()) - {"name", "value"}
            if unknown:
                raise ConfigError(f"unknown keys in {field_path}[{idx}]: {sorted(unknown)}")
            options[str(item["name"])] = item.get("value")
        elif isinstance(item, dict) and len(item) == 1:
            options.update({str(key): value for key, value in item.items()})
        else:
            raise ConfigError(f"{field_path}[{idx}] must be a name/value pair")
    return options


def parse_links(raw: Any, field_path: str, depth: int = 1) -> Tuple[ChainLink, ...]:
    if raw is None:
        return ()
    # one level past the limit is kept so resolve_chains can report the overflow
    if depth > MAX_CHAIN_DEPTH + 1:
        return ()
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigError(f"{field_path} must be a list of chained tasks")
    links: List[ChainLink] = []
    for idx, item in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if isinstance(item, str):
            item = {"task": item}
        if not isinstance(item, dict):
            raise ConfigError(f"{item_path} must be a mapping")
        name = _optional_str(item.get("task"), f"{item_path}.task")
        if name is None:
            raise ConfigError(f"{item_path} lacks a task name")
        links.append(
            ChainLink(
                task=name,
                options=normalize_options(item.get("options"), f"{item_path}.options"),
                chain=parse_links(item.get("chain"), f"{item_path}.chain", depth + 1),
            )
        )
    return tuple(links)


def parse_database(raw: Any) -> DatabaseSpec:
    section = _mapping(raw, "database")
    return DatabaseSpec(
        dsn=_optional_str(section.get("dsn"), "database.dsn") or "",
        user=_optional_str(section.get("user"), "database.user") or "",
        password=_optional_str(section.get("pass"), "database.pass") or "",
        options=normalize_options(section.get("options"), "database.options"),
    )


def parse_queue(name: str, raw: Any) -> QueueSpec:
    section = _mapping(raw, f"queue {name}")
    concurrency = section.get("concurrency", DEFAULT_CONCURRENCY)
    if isinstance(concurrency, str) and concurrency.strip().isdigit():
        concurrency = int(concurrency.strip())
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 0:
        raise ConfigError(f"queue {name} concurrency must be an integer >= 0")
    return QueueSpec(
        name=name,
        concurrency=concurrency,
        onerror=_optional_str(section.get("onerror"), f"queue {name} onerror"),
        onfatal=_optional_str(section.get("onfatal"), f"queue {name} onfatal"),
    )


class Config:
    """Loads, validates and publishes configuration generations.

    A new generation replaces the active one only when the whole document
    validates; readers always see one complete generation.
    """

    def __init__(self, path: Union[str, Path], logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = logger or module_logger
        self.monitor = FileMonitor(self.path)
        self._generation: Optional[Generation] = None
        self._publish_lock = threading.Lock()
        self._version = 0

    @property
    def generation(self) -> Optional[Generation]:
        return self._generation

    @property
    def loaded(self) -> bool:
        return self._generation is not None

    def scan(self) -> bool:
        return self.monitor.scan()

    def load(self, source: Union[None, str, Mapping[str, Any]] = None) -> LoadStatus:
        self.logger.debug("loading configuration from %s", self.path)
        previous = self._generation

        # a broken document never replaces a good generation
        status = LoadStatus(ok=previous is not None)

        try:
            if source is None:
                payload = parse_document(self.path.read_text(encoding="utf-8"))
            elif isinstance(source, str):
                payload = parse_document(source)
            elif isinstance(source, Mapping):
                payload = copy.deepcopy(dict(source))
            else:
                raise ParseError("Top-level config must be a mapping.")
        except (ParseError, OSError) as exc:
            status.parsed = False
            status.fail(str(exc))
            self.logger.error("failed to load configuration: %s", status.errmsg)
            return status

        status.parsed = True
        self.logger.debug("parsed configuration: %r", payload)

        generation = self._build(payload, status)

        if previous is not None:
            status.store_modified = previous.database != generation.database

        if not status.failed:
            with self._publish_lock:
                self._generation = generation
                self._version = generation.version
            status.updated = True
            status.ok = True
            self.logger.info(
                "published configuration generation %s (%s tasks, %s queues)",
                generation.version,
                len(generation.tasks),
                len(generation.queues),
            )
        elif previous is not None:
            self.logger.warning(
                "configuration rejected; generation %s remains active", previous.version
            )
        return status

    def _build(self, payload: Dict[str, Any], status: LoadStatus) -> Generation:
        state_root = self._setup_state_root(payload.get("state"), status)

        database = DatabaseSpec()
        try:
            database = parse_database(payload.get("database"))
        except ConfigError as exc:
            self._fail(status, str(exc))

        plugins: Dict[str, Any] = {}
        try:
            plugins = copy.deepcopy(_mapping(payload.get("plugin"), "plugin"))
        except ConfigError as exc:
            self._fail(status, str(exc))

        queues: Dict[str, QueueSpec] = {}
        try:
            queue_section = _mapping(payload.get("queue"), "queue")
        except ConfigError as exc:
            self._fail(status, str(exc))
            queue_section = {}
        for name, raw in queue_section.items():
            try:
                queues[str(name)] = parse_queue(str(name), raw)
            except ConfigError as exc:
                self._fail(status, str(exc))

        tasks: Dict[str, Task] = {}
        try:
            task_section = _mapping(payload.get("task"), "task")
        except ConfigError as exc:
            self._fail(status, str(exc))
            task_section = {}
        for name, raw in task_section.items():
            task = self._setup_task(str(name), raw, status)
            if task is not None:
                tasks[task.name] = task

        tasks = resolve_chains(tasks, status, self.logger)

        for task in tasks.values():
            if task.queue and task.queue not in queues:
                self.logger.warning("task %s assigned to undeclared queue %s", task.name, task.queue)

        return Generation(
            version=self._version + 1,
            state_root=state_root,
            database=database,
            tasks=tasks,
            queues=queues,
            plugins=plugins,
            document=payload,
        )

    def _setup_state_root(self, raw: Any, status: LoadStatus) -> Optional[Path]:
        section = raw if isinstance(raw, dict) else {}
        root = section.get("root")
        if not isinstance(root, str) or not root.strip():
            self._fail(status, "no root directory defined for state information")
            return None
        path = Path(root.strip()).expanduser()
        if not path.is_absolute():
            path = self.path.parent / path
        try:
            path.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            self._fail(status, f"unable to create {root}: {exc}")
        return path

    def _setup_task(self, name: str, raw: Any, status: LoadStatus) -> Optional[Task]:
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            self._fail(status, f"task {name} must be a mapping")
            return None

        try:
            queue = _optional_str(normalize_queue(raw.get("queue")), f"task {name} queue")
            class_name = _optional_str(raw.get("class"), f"task {name} class")
            cmd = _optional_str(raw.get("cmd"), f"task {name} cmd")
            options = normalize_options(raw.get("options"), f"task {name} options")
            links = parse_links(raw.get("chain"), f"task {name} chain")
            onerror = _optional_str(raw.get("onerror"), f"task {name} onerror")
            run = _optional_str(raw.get("run"), f"task {name} run")
        except ConfigError as exc:
            self._fail(status, str(exc))
            return None

        if not queue:
            self._fail(status, f"task {name} not assigned to a queue")
        if not (class_name or cmd):
            self._fail(status, f"task {name} lacks a class or command line")
        if class_name and cmd:
            self._fail(status, f"task {name} using mutually exclusive class/cmd")

        schedule = None
        try:
            schedule = compute_occurrence_set(raw.get("schedule"))
        except ConfigError as exc:
            self._fail(status, f"unable to setup schedule for {name}: {exc}")

        return Task(
            name=name,
            queue=queue,
            class_name=class_name,
            cmd=cmd,
            enabled=normalize_enabled(raw.get("enabled")),
            options=options,
            schedule=schedule,
            links=links,
            onerror=onerror,
            run=run,
        )

    def _fail(self, status: LoadStatus, message: str) -> None:
        self.logger.error(message)
        status.fail(message)

    def get_queue_names(self) -> List[str]:
        generation = self._generation
        return list(generation.queues) if generation else []

    def get_task_names(self) -> List[str]:
        generation = self._generation
        return list(generation.tasks) if generation else []

    def get_task_info(self, name: str) -> Optional[Task]:
        generation = self._generation
        return generation.tasks.get(name) if generation else None

    def get_queue_info(self, name: str) -> Optional[QueueSpec]:
        generation = self._generation
        return generation.queues.get(name) if generation else None

    def get_plugin_names(self) -> List[str]:
        generation = self._generation
        return list(generation.plugins) if generation else []

    def get_plugin_info(self, name: str) -> Any:
        generation = self._generation
        return generation.plugins.get(name) if generation else None

    def has_plugin(self, name: str) -> bool:
        generation = self._generation
        return generation is not None and name in generation.plugins

    def fetch(self, path: str) -> Any:
        generation = self._generation
        if generation is None:
            return None
        ref: Any = generation.document
        for segment in path.strip("/").split("/"):
            if segment == "":
                continue
            if isinstance(ref, dict):
                ref = ref.get(segment)
            elif isinstance(ref, list):
                try:
                    ref = ref[int(segment)]
                except (ValueError, IndexError):
                    return None
            else:
                return None
        return ref
