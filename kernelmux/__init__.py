from importlib.metadata import PackageNotFoundError, version
from .codec import MessageCodec
from .config import ManagerConfig
from .connection import KernelConnection
from .errors import *
from .events import EventHub
from .manager import KernelManager
from .specs import JupyterSpecResolver, SpecResolver, StaticSpecResolver
from .supervisor import KernelProcess
from .types import ConnectionInfo, ErrorContent, ExecutionOutput, KernelInfo, KernelSpec, KernelState, SessionInfo

try:
    __version__ = version("kernelmux")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["KernelManager", "KernelConnection", "KernelProcess", "MessageCodec", "ManagerConfig", "EventHub", "SpecResolver",
    "JupyterSpecResolver", "StaticSpecResolver", "ConnectionInfo", "ErrorContent", "ExecutionOutput", "KernelInfo", "KernelSpec",
    "KernelState", "SessionInfo", "KernelError", "SpecNotFoundError", "KernelNotFoundError", "StartupTimeoutError",
    "KernelConnectionError", "ConnectionClosed", "ProtocolError", "RequestTimeout", "ExecutionTimeout", "ExecutionError",
    "HeartbeatTimeout", "__version__"]
