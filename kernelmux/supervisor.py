import asyncio, codecs, json, logging, os, signal, subprocess
from typing import Callable
from fastcore.basics import store_attr
from .errors import StartupTimeoutError
from .types import KernelSpec, remove_connection_file

log = logging.getLogger("kernelmux.supervisor")
OutputCallback = Callable[[str, str], None]


def connection_file_ready(path)->bool:
    "True once `path` holds JSON advertising the shell and iopub ports."
    try:
        with open(path, encoding="utf-8") as f: data = json.load(f)
    except (OSError, ValueError): return False
    return isinstance(data, dict) and bool(data.get("shell_port")) and bool(data.get("iopub_port"))


class KernelProcess:
    """OS process of one kernel: launch, readiness wait, signals and shutdown.

    The child runs in its own session on POSIX so interrupts and kills can be
    sent to its whole process group without reaching us. Its stdout/stderr are
    drained continuously and forwarded to `on_output` for diagnostics.
    """

    def __init__(self, proc:asyncio.subprocess.Process, argv:list[str], label:str="kernel", on_output:OutputCallback|None=None):
        store_attr()
        streams = (("stdout", proc.stdout), ("stderr", proc.stderr))
        self.readers = [asyncio.create_task(self._forward(name, s), name=f"kernelmux-{name}-{proc.pid}") for name, s in streams if s is not None]

    @classmethod
    async def spawn(cls, spec:KernelSpec, connection_file, cwd=None, on_output:OutputCallback|None=None,
        extra_env:dict|None=None, label:str|None=None)->"KernelProcess":
        "Launch `spec` against `connection_file` with `spec.env` merged over the current environment."
        argv = spec.launch_argv(connection_file)
        if not argv: raise ValueError(f"kernel spec {spec.name!r} has an empty argv")
        env = dict(os.environ) | dict(spec.env) | dict(extra_env or {}) | dict(JPY_PARENT_PID=str(os.getpid()))
        if os.name == "nt": kw = dict(creationflags=subprocess.CREATE_NEW_PROCESS_GROUP)
        else: kw = dict(start_new_session=True)
        proc = await asyncio.create_subprocess_exec(*argv, stdin=asyncio.subprocess.DEVNULL, stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE, cwd=None if cwd is None else str(cwd), env=env, **kw)
        label = label or spec.name
        log.info("Started kernel %s (pid %d): %s", label, proc.pid, " ".join(argv))
        return cls(proc, argv, label, on_output)

    @property
    def pid(self)->int: return self.proc.pid

    @property
    def returncode(self)->int|None: return self.proc.returncode

    @property
    def alive(self)->bool: return self.proc.returncode is None

    async def wait(self)->int: return await self.proc.wait()

    async def wait_for_ready(self, connection_file, timeout:float=60.0, poll_interval:float=0.1, grace:float=0.5):
        """Poll `connection_file` until it advertises ports, then allow `grace` seconds for socket binding.

        Raises `StartupTimeoutError` (after deleting the connection file) if the
        process exits first or `timeout` elapses.
        """
        max_attempts = max(1, int(timeout / poll_interval) + 1)
        try:
            for _ in range(max_attempts):
                self._check_running()
                if connection_file_ready(connection_file): break
                await asyncio.sleep(poll_interval)
            else: raise StartupTimeoutError(f"kernel {self.label} was not ready within {timeout}s")
            await asyncio.sleep(grace)
            self._check_running()
        except StartupTimeoutError:
            remove_connection_file(connection_file)
            raise

    def _check_running(self):
        if self.returncode is not None: raise StartupTimeoutError(f"kernel {self.label} exited with code {self.returncode} during startup")

    async def terminate(self, grace:float=5.0)->int|None:
        "SIGTERM, then SIGKILL the process group if still running after `grace` seconds. Returns the exit code."
        if self.returncode is not None: return self.returncode
        try: self.proc.terminate()
        except ProcessLookupError: pass
        try: return await asyncio.wait_for(self.proc.wait(), grace)
        except asyncio.TimeoutError: log.warning("Kernel %s (pid %d) still running %.1fs after SIGTERM; killing", self.label, self.pid, grace)
        self.kill()
        return await self.proc.wait()

    def kill(self):
        if self.returncode is not None: return
        if os.name != "nt":
            try:
                os.killpg(self.pid, signal.SIGKILL)
                return
            except OSError as err: log.debug("killpg(%d) failed: %s", self.pid, err)
        try: self.proc.kill()
        except ProcessLookupError: pass

    def interrupt(self)->bool:
        "Send SIGINT to the kernel's process group; returns False where unsupported."
        if self.returncode is not None: return False
        if os.name == "nt":
            log.warning("Signal interrupt not supported on Windows")
            return False
        try: os.killpg(self.pid, signal.SIGINT)
        except OSError as err:
            log.warning("Interrupt signal to kernel %s failed: %s", self.label, err)
            return False
        return True

    async def close(self):
        "Stop forwarding output."
        for task in self.readers: task.cancel()
        await asyncio.gather(*self.readers, return_exceptions=True)

    async def _forward(self, name:str, stream:asyncio.StreamReader):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while (chunk := await stream.read(4096)):
            text = decoder.decode(chunk)
            if not text: continue
            log.debug("[%s %s] %s", self.label, name, text.rstrip())
            if self.on_output is None: continue
            try: self.on_output(name, text)
            except Exception: log.exception("Output callback failed for kernel %s", self.label)
