import asyncio, logging, uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from fastcore.meta import delegates
import zmq.asyncio
from .config import ManagerConfig
from .connection import KernelConnection
from .errors import ConnectionClosed, HeartbeatTimeout, KernelConnectionError, KernelError, KernelNotFoundError
from .errors import RequestTimeout, SpecNotFoundError, StartupTimeoutError
from .events import EventHub, KERNEL_ERROR, KERNEL_STARTED, KERNEL_STATE_CHANGED, KERNEL_STOPPED, OUTPUT
from .specs import JupyterSpecResolver, SpecResolver
from .supervisor import KernelProcess
from .types import ConnectionInfo, ExecutionOutput, KernelInfo, KernelSpec, KernelState, SessionInfo
from .types import connection_file_path, remove_connection_file

log = logging.getLogger("kernelmux.manager")


@dataclass
class ManagedKernel:
    "Registry entry tying one kernel's process, connection and session together."
    id:str
    session_name:str
    spec:KernelSpec
    connection_info:ConnectionInfo
    connection_file:Path
    cwd:str|None = None
    process:KernelProcess|None = None
    connection:KernelConnection|None = None
    state:KernelState = KernelState.STARTING
    started_at:datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    watcher:asyncio.Task|None = None
    stopping:asyncio.Task|None = None
    retiring:asyncio.Task|None = None

    def info(self)->KernelInfo:
        pid = self.process.pid if self.process is not None and self.process.alive else None
        return KernelInfo(id=self.id, session_name=self.session_name, spec=self.spec, connection=self.connection_info,
            connection_file=str(self.connection_file), state=self.state, pid=pid, started_at=self.started_at)


class KernelManager:
    """Registry and lifecycle of kernels, keyed by kernel id and by session name.

    A session maps to at most one live kernel. A kernel is only registered once
    it has answered `kernel_info`; until then a failed startup is rolled back
    completely. Subscribe to lifecycle and output notifications via `events`.
    """

    def __init__(self, resolver:SpecResolver|None=None, config:ManagerConfig|None=None, context:zmq.asyncio.Context|None=None):
        self.resolver = resolver or JupyterSpecResolver()
        self.config = config or ManagerConfig.from_env()
        self.context = context or zmq.asyncio.Context.instance()
        self.events = EventHub()
        self.kernels:dict[str, ManagedKernel] = {}
        self.sessions:dict[str, str] = {}
        self.starting:dict[str, asyncio.Task] = {}
        self.closed = False

    async def __aenter__(self): return self

    async def __aexit__(self, *exc): await self.aclose()

    def _get(self, kernel_id:str)->ManagedKernel:
        kernel = self.kernels.get(kernel_id)
        if kernel is None: raise KernelNotFoundError(f"no kernel with id {kernel_id!r}")
        return kernel

    def _live_kernel_id(self, session_name:str)->str|None:
        kernel = self.kernels.get(self.sessions.get(session_name, ""))
        return kernel.id if kernel is not None and kernel.state is not KernelState.DEAD else None

    async def _resolve(self, name_or_language:str)->KernelSpec:
        spec = await asyncio.to_thread(self.resolver.find_by_name_or_language, name_or_language)
        if spec is None: raise SpecNotFoundError(f"No kernel found for: {name_or_language}")
        return spec

    async def start_kernel(self, name_or_language:str, session_name:str="default", cwd:str|None=None)->str:
        """Return the id of the live kernel for `session_name`, starting one for `name_or_language` if needed.

        Concurrent calls for the same session share a single startup.
        """
        if self.closed: raise KernelError("kernel manager is closed")
        spec = await self._resolve(name_or_language)
        return await self._start(spec, session_name, cwd)

    async def _start(self, spec:KernelSpec, session_name:str, cwd:str|None)->str:
        if (kernel_id := self._live_kernel_id(session_name)) is not None: return kernel_id
        task = self.starting.get(session_name)
        if task is None:
            # spec resolution runs in a thread, so `aclose` may have run meanwhile
            if self.closed: raise KernelError("kernel manager is closed")
            task = asyncio.create_task(self._launch(spec, session_name, cwd), name=f"kernelmux-start-{session_name}")
            self.starting[session_name] = task
            task.add_done_callback(partial(self._startup_done, session_name))
        return await asyncio.shield(task)

    def _startup_done(self, session_name:str, task:asyncio.Task):
        if self.starting.get(session_name) is task: del self.starting[session_name]
        if not task.cancelled() and task.exception() is not None: log.debug("Startup for session %s failed: %s", session_name, task.exception())

    async def _launch(self, spec:KernelSpec, session_name:str, cwd:str|None)->str:
        cfg = self.config
        kernel_id = str(uuid.uuid4())
        path = connection_file_path(kernel_id, cfg.resolved_runtime_dir())
        info = ConnectionInfo.create(path, ip=cfg.ip, transport=cfg.transport, kernel_name=spec.name)
        kernel = ManagedKernel(kernel_id, session_name, spec, info, path, cwd=cwd)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.startup_timeout
        log.info("Starting %s kernel %s for session %s", spec.name, kernel_id, session_name)
        try:
            kernel.process = await KernelProcess.spawn(spec, path, cwd, on_output=partial(self._on_output, kernel_id),
                label=f"{spec.name}:{kernel_id[:8]}")
            await kernel.process.wait_for_ready(path, cfg.startup_timeout, cfg.ready_poll_interval, cfg.ready_grace)
            kernel.connection = self._connection(kernel)
            await kernel.connection.connect()
            await self._handshake(kernel, max(0.1, deadline - loop.time()))
        except BaseException:
            await self._rollback(kernel)
            raise
        kernel.state = KernelState.IDLE
        self.kernels[kernel_id] = kernel
        self.sessions[session_name] = kernel_id
        kernel.watcher = asyncio.create_task(self._watch(kernel), name=f"kernelmux-watch-{kernel_id[:8]}")
        log.info("Kernel %s ready (pid %d)", kernel_id, kernel.process.pid)
        self.events.emit(KERNEL_STARTED, kernel.info())
        self.events.emit(KERNEL_STATE_CHANGED, kernel_id, KernelState.IDLE)
        return kernel_id

    async def _handshake(self, kernel:ManagedKernel, timeout:float):
        "Wait until the kernel answers `kernel_info` on shell and iopub, failing early if the process exits first."
        info = asyncio.ensure_future(kernel.connection.wait_for_ready(timeout=timeout))
        exited = asyncio.ensure_future(kernel.process.wait())
        try: await asyncio.wait((info, exited), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (info, exited):
                if not t.done(): t.cancel()
            await asyncio.gather(info, exited, return_exceptions=True)
        if info.cancelled():
            raise StartupTimeoutError(f"kernel {kernel.id} exited with code {kernel.process.returncode} during startup")
        try: info.result()
        except RequestTimeout as exc: raise StartupTimeoutError(f"kernel {kernel.id} did not become ready within {timeout:.1f}s") from exc

    async def _rollback(self, kernel:ManagedKernel):
        log.warning("Startup of kernel %s failed; cleaning up", kernel.id)
        if kernel.connection is not None: await kernel.connection.close("kernel startup failed")
        if kernel.process is not None:
            kernel.process.kill()
            await kernel.process.wait()
            await kernel.process.close()
        remove_connection_file(kernel.connection_file)

    def _connection(self, kernel:ManagedKernel)->KernelConnection:
        cfg = self.config
        return KernelConnection(kernel.connection_info, on_status=partial(self._on_status, kernel), on_stream=partial(self._on_stream, kernel),
            on_heartbeat=partial(self._on_heartbeat, kernel), context=self.context, hb_interval=cfg.hb_interval, hb_timeout=cfg.hb_timeout)

    def _registered(self, kernel:ManagedKernel)->bool: return self.kernels.get(kernel.id) is kernel

    def _set_state(self, kernel:ManagedKernel, state:KernelState):
        if kernel.state is KernelState.DEAD or kernel.state is state: return
        kernel.state = state
        self.events.emit(KERNEL_STATE_CHANGED, kernel.id, state)

    def _on_status(self, kernel:ManagedKernel, state:KernelState, parent_id:str|None):
        if state is KernelState.UNKNOWN or not self._registered(kernel): return
        self._set_state(kernel, state)

    def _on_stream(self, kernel:ManagedKernel, name:str, text:str):
        if self._registered(kernel): self.events.emit(OUTPUT, kernel.id, name, text)

    def _on_output(self, kernel_id:str, name:str, text:str): self.events.emit(OUTPUT, kernel_id, name, text)

    def _on_heartbeat(self, kernel:ManagedKernel, ok:bool):
        if ok or not self._registered(kernel): return
        self.events.emit(KERNEL_ERROR, kernel.id, HeartbeatTimeout(f"kernel {kernel.id} stopped responding to heartbeats"))

    async def _watch(self, kernel:ManagedKernel):
        code = await kernel.process.wait()
        if kernel.stopping is not None:
            log.info("Kernel %s exited with code %s", kernel.id, code)
            error = None
        else:
            log.warning("Kernel %s exited unexpectedly with code %s", kernel.id, code)
            error = ConnectionClosed(f"kernel {kernel.id} died with exit code {code}")
        await asyncio.shield(self._retire(kernel, error))

    def _retire(self, kernel:ManagedKernel, error:Exception|None=None)->asyncio.Task:
        "Mark `kernel` dead and unregister it now; the returned task finishes resource cleanup once."
        if kernel.retiring is None:
            self._set_state(kernel, KernelState.DEAD)
            if self._registered(kernel): del self.kernels[kernel.id]
            if self.sessions.get(kernel.session_name) == kernel.id: del self.sessions[kernel.session_name]
            if error is not None: self.events.emit(KERNEL_ERROR, kernel.id, error)
            kernel.retiring = asyncio.create_task(self._cleanup(kernel, error), name=f"kernelmux-retire-{kernel.id[:8]}")
        return kernel.retiring

    async def _cleanup(self, kernel:ManagedKernel, error:Exception|None):
        try:
            if kernel.connection is not None: await kernel.connection.close(str(error) if error is not None else "kernel stopped")
            if kernel.process is not None:
                if kernel.process.alive:
                    kernel.process.kill()
                    await kernel.process.wait()
                await kernel.process.close()
        finally:
            remove_connection_file(kernel.connection_file)
            self.events.emit(KERNEL_STOPPED, kernel.id)

    async def stop_kernel(self, kernel_id:str):
        "Shut `kernel_id` down, escalating to SIGKILL; unknown ids are ignored."
        kernel = self.kernels.get(kernel_id)
        if kernel is None: return
        if kernel.stopping is None: kernel.stopping = asyncio.create_task(self._stop(kernel), name=f"kernelmux-stop-{kernel_id[:8]}")
        await asyncio.shield(kernel.stopping)

    async def _stop(self, kernel:ManagedKernel):
        cfg = self.config
        log.info("Stopping kernel %s", kernel.id)
        try:
            if kernel.connection is not None and kernel.connection.connected:
                try: await kernel.connection.shutdown(timeout=cfg.shutdown_timeout)
                except (KernelError, OSError) as exc: log.debug("shutdown_request to %s failed: %s", kernel.id, exc)
            if kernel.process is not None: await kernel.process.terminate(cfg.kill_grace)
        finally: await asyncio.shield(self._retire(kernel))

    async def restart_kernel(self, kernel_id:str)->str:
        "Stop `kernel_id` and start a fresh kernel from the same spec for the same session; returns the new id."
        kernel = self._get(kernel_id)
        log.info("Restarting kernel %s", kernel_id)
        await self.stop_kernel(kernel_id)
        return await self._start(kernel.spec, kernel.session_name, kernel.cwd)

    async def interrupt_kernel(self, kernel_id:str):
        """Interrupt whatever `kernel_id` is running.

        Kernels with `interrupt_mode == "message"` get an `interrupt_request` on
        the control channel, falling back to SIGINT if it fails; others get SIGINT
        on their process group.
        """
        kernel = self._get(kernel_id)
        if kernel.spec.interrupt_mode == "message" and kernel.connection is not None:
            try:
                await kernel.connection.interrupt(timeout=self.config.interrupt_timeout)
                return
            except KernelError as exc: log.warning("interrupt_request to %s failed (%s); sending SIGINT", kernel_id, exc)
        if kernel.process is None or not kernel.process.interrupt(): raise KernelError(f"could not interrupt kernel {kernel_id}")

    @delegates(KernelConnection.execute)
    async def execute(self, kernel_id:str, code:str, **kwargs)->ExecutionOutput:
        "Run `code` on `kernel_id`; the deadline defaults to `config.execute_timeout`."
        kernel = self._get(kernel_id)
        if kernel.connection is None: raise KernelConnectionError(f"kernel {kernel_id} has no connection")
        kwargs.setdefault("timeout", self.config.execute_timeout)
        return await kernel.connection.execute(code, **kwargs)

    @delegates(KernelConnection.execute)
    async def execute_on_session(self, session_name:str, language:str, code:str, cwd:str|None=None, **kwargs)->ExecutionOutput:
        "Run `code` on the session's kernel, starting one for `language` if it has none."
        kernel_id = self._live_kernel_id(session_name)
        if kernel_id is None: kernel_id = await self.start_kernel(language, session_name, cwd)
        return await self.execute(kernel_id, code, **kwargs)

    async def shutdown_all(self):
        "Stop every kernel concurrently; individual failures are logged."
        ids = list(self.kernels)
        results = await asyncio.gather(*(self.stop_kernel(k) for k in ids), return_exceptions=True)
        for kernel_id, res in zip(ids, results):
            if isinstance(res, Exception): log.warning("Failed to stop kernel %s: %s", kernel_id, res)

    async def aclose(self):
        "Wait for in-flight startups, then stop all kernels."
        self.closed = True
        if self.starting: await asyncio.gather(*list(self.starting.values()), return_exceptions=True)
        await self.shutdown_all()

    async def available_kernels(self)->list[KernelSpec]: return await asyncio.to_thread(self.resolver.discover)

    def get_kernel_info(self, kernel_id:str)->KernelInfo|None:
        kernel = self.kernels.get(kernel_id)
        return None if kernel is None else kernel.info()

    def get_sessions(self)->list[SessionInfo]:
        return [SessionInfo(name, k.id, k.spec.language, k.state) for name, kid in self.sessions.items() if (k := self.kernels.get(kid))]

    def get_kernel_ids(self)->list[str]: return list(self.kernels)

    def get_kernel_for_session(self, session_name:str)->str|None: return self.sessions.get(session_name)

    def get_connection(self, kernel_id:str)->KernelConnection|None:
        kernel = self.kernels.get(kernel_id)
        return None if kernel is None else kernel.connection
