"Manager settings, with environment overrides under the `KERNELMUX_` prefix."
import logging, os
from dataclasses import dataclass, fields
from pathlib import Path
from .types import runtime_dir

log = logging.getLogger("kernelmux.config")
ENV_PREFIX = "KERNELMUX_"


def _env_float(name:str, default:float|None)->float|None:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "": return default
    try: return float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default


@dataclass
class ManagerConfig:
    runtime_dir:Path|None = None
    ip:str = "127.0.0.1"
    transport:str = "tcp"
    startup_timeout:float = 60.0
    ready_poll_interval:float = 0.1
    ready_grace:float = 0.5
    shutdown_timeout:float = 5.0
    kill_grace:float = 5.0
    interrupt_timeout:float = 5.0
    execute_timeout:float|None = None
    hb_interval:float = 3.0
    hb_timeout:float = 3.0

    def __post_init__(self):
        if self.transport not in ("tcp", "ipc"): raise ValueError(f"unsupported transport {self.transport!r}")
        if self.runtime_dir is not None: self.runtime_dir = Path(self.runtime_dir)

    @classmethod
    def from_env(cls, **overrides)->"ManagerConfig":
        "Build from defaults, then `KERNELMUX_*` env vars, then `overrides`."
        env = {}
        aliases = dict(ready_poll_interval="READY_POLL")
        for f in fields(cls):
            if f.name in ("runtime_dir", "ip", "transport"): continue
            name = ENV_PREFIX + aliases.get(f.name, f.name.upper())
            if (val := _env_float(name, None)) is not None: env[f.name] = val
        if (ip := os.environ.get(ENV_PREFIX + "IP")): env["ip"] = ip
        if (transport := os.environ.get(ENV_PREFIX + "TRANSPORT")): env["transport"] = transport
        return cls(**(env | overrides))

    def resolved_runtime_dir(self)->Path:
        "Runtime directory for connection files, created on demand."
        path = self.runtime_dir or runtime_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path
