"Exception hierarchy for kernel lifecycle and wire-protocol failures."

__all__ = ["KernelError", "SpecNotFoundError", "KernelNotFoundError", "StartupTimeoutError", "KernelConnectionError", "ConnectionClosed",
    "ProtocolError", "RequestTimeout", "ExecutionTimeout", "ExecutionError", "HeartbeatTimeout"]


class KernelError(Exception):
    "Base class for all kernelmux errors."


class SpecNotFoundError(KernelError, LookupError):
    "No kernel spec matches the requested name or language."


class KernelNotFoundError(KernelError, LookupError):
    "No registered kernel has the requested id."


class StartupTimeoutError(KernelError, TimeoutError):
    "Kernel process exited or failed to become ready in time."


class KernelConnectionError(KernelError, ConnectionError):
    "Sockets to a kernel could not be opened, or the connection is unusable."


class ConnectionClosed(KernelConnectionError):
    "Connection was closed while an operation was pending."


class ProtocolError(KernelError, ValueError):
    "A received message was malformed or failed signature verification."


class RequestTimeout(KernelError, TimeoutError):
    "No reply arrived for a request before its deadline."


class ExecutionTimeout(RequestTimeout):
    "No reply/idle pair arrived for an execute_request before its deadline."


class ExecutionError(KernelError):
    "The kernel reported an error while executing code."

    def __init__(self, ename:str, evalue:str, traceback:list[str]|None=None, output=None):
        super().__init__(f"{ename}: {evalue}")
        self.ename, self.evalue, self.traceback, self.output = ename, evalue, list(traceback or []), output


class HeartbeatTimeout(KernelError, TimeoutError):
    "The kernel stopped echoing heartbeats; reported, never acted on automatically."
