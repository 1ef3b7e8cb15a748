import json, os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from jupyter_client.connect import write_connection_file
from jupyter_client.session import new_id_bytes
from jupyter_core.paths import jupyter_runtime_dir
from .errors import ExecutionError


class KernelState(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, execution_state:str|None)->"KernelState":
        "Map an iopub `execution_state` to a state; unrecognised values become UNKNOWN."
        try: return cls(execution_state)
        except ValueError: return cls.UNKNOWN


@dataclass(frozen=True)
class KernelSpec:
    "Immutable launch template for a kernel."
    name:str
    argv:tuple[str, ...]
    language:str = "unknown"
    display_name:str = ""
    env:dict[str, str] = field(default_factory=dict)
    interrupt_mode:str = "signal"
    resource_dir:str = ""
    metadata:dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "argv", tuple(self.argv))
        if not self.display_name: object.__setattr__(self, "display_name", self.name)
        if self.interrupt_mode not in ("signal", "message"): raise ValueError(f"bad interrupt_mode {self.interrupt_mode!r}")

    @classmethod
    def from_jupyter(cls, name:str, spec, resource_dir:str="")->"KernelSpec":
        "Build from a `jupyter_client` KernelSpec object or its `kernel.json` dict."
        data = spec.to_dict() if hasattr(spec, "to_dict") else dict(spec)
        return cls(name=name, argv=data.get("argv") or (), language=data.get("language") or "unknown",
            display_name=data.get("display_name") or name, env=dict(data.get("env") or {}),
            interrupt_mode=data.get("interrupt_mode") or "signal", metadata=dict(data.get("metadata") or {}),
            resource_dir=resource_dir or getattr(spec, "resource_dir", "") or "")

    def launch_argv(self, connection_file:str|os.PathLike)->list[str]:
        "Return `argv` with `{connection_file}` and `{resource_dir}` substituted."
        subs = {"{connection_file}": str(connection_file), "{resource_dir}": self.resource_dir}
        out = []
        for arg in self.argv:
            for k, v in subs.items(): arg = arg.replace(k, v)
            out.append(arg)
        return out


@dataclass
class ConnectionInfo:
    transport:str
    ip:str
    shell_port:int
    iopub_port:int
    stdin_port:int
    control_port:int
    hb_port:int
    key:str
    signature_scheme:str = "hmac-sha256"
    kernel_name:str = ""

    @classmethod
    def from_dict(cls, data:dict)->"ConnectionInfo":
        key = data.get("key", "")
        if isinstance(key, bytes): key = key.decode()
        return cls(transport=data.get("transport", "tcp"), ip=data["ip"], shell_port=int(data["shell_port"]),
            iopub_port=int(data["iopub_port"]), stdin_port=int(data["stdin_port"]), control_port=int(data["control_port"]),
            hb_port=int(data["hb_port"]), key=key, signature_scheme=data.get("signature_scheme", "hmac-sha256"),
            kernel_name=data.get("kernel_name", ""))

    @classmethod
    def from_file(cls, path:str|os.PathLike)->"ConnectionInfo":
        "Load connection info from JSON connection file at `path`."
        with open(path, encoding="utf-8") as f: return cls.from_dict(json.load(f))

    @classmethod
    def create(cls, path:str|os.PathLike, ip:str="127.0.0.1", transport:str="tcp", kernel_name:str="")->"ConnectionInfo":
        "Pick free ports and a fresh key, write them to `path`, and return the result."
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        _, cfg = write_connection_file(str(path), ip=ip, key=new_id_bytes(), transport=transport, kernel_name=kernel_name)
        return cls.from_dict(cfg)

    def to_dict(self)->dict: return asdict(self)

    @property
    def ports(self)->dict[str, int]:
        return dict(shell=self.shell_port, iopub=self.iopub_port, stdin=self.stdin_port, control=self.control_port, hb=self.hb_port)

    def addr(self, port:int)->str:
        if self.transport == "ipc": return f"ipc://{self.ip}-{port}"
        return f"{self.transport}://{self.ip}:{port}"


def runtime_dir()->Path:
    "Jupyter runtime directory; `JUPYTER_RUNTIME_DIR` overrides the platform default."
    return Path(jupyter_runtime_dir())


def connection_file_path(kernel_id:str, directory:str|os.PathLike|None=None)->Path:
    return Path(directory or runtime_dir()) / f"kernel-{kernel_id}.json"


def remove_connection_file(path:str|os.PathLike|None):
    "Delete `path` if present; missing files are not an error."
    if not path: return
    try: os.remove(path)
    except FileNotFoundError: pass


@dataclass
class ErrorContent:
    ename:str
    evalue:str
    traceback:list[str] = field(default_factory=list)

    @classmethod
    def from_content(cls, content:dict)->"ErrorContent":
        return cls(ename=content.get("ename") or "Error", evalue=content.get("evalue") or "", traceback=list(content.get("traceback") or []))


@dataclass
class ExecutionOutput:
    """Accumulated result of one `execute_request`.

    Streams are concatenated in arrival order, `display_data` keeps every
    display/update bundle, and `result` holds the `execute_result` content.
    """
    stdout:str = ""
    stderr:str = ""
    display_data:list[dict] = field(default_factory=list)
    result:dict|None = None
    error:ErrorContent|None = None
    execution_count:int|None = None
    status:str = "ok"
    msg_id:str|None = None

    @property
    def ok(self)->bool: return self.error is None and self.status == "ok"

    @property
    def text(self)->str|None:
        "Plain-text form of the execute result, if any."
        return (self.result or {}).get("data", {}).get("text/plain")

    def raise_for_error(self):
        if self.error is not None: raise ExecutionError(self.error.ename, self.error.evalue, self.error.traceback, output=self)
        return self


@dataclass(frozen=True)
class KernelInfo:
    id:str
    session_name:str
    spec:KernelSpec
    connection:ConnectionInfo
    connection_file:str
    state:KernelState
    pid:int|None
    started_at:datetime

    @property
    def language(self)->str: return self.spec.language


@dataclass(frozen=True)
class SessionInfo:
    name:str
    kernel_id:str
    language:str
    state:KernelState
