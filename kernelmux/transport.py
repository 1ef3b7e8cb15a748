import asyncio, inspect, logging
from typing import Callable
from fastcore.basics import store_attr
import zmq, zmq.asyncio
from .codec import MessageCodec, msg_type
from .errors import ConnectionClosed, KernelConnectionError, ProtocolError
from .types import ConnectionInfo
from . import debug as _dbg_mod

log = logging.getLogger("kernelmux.transport")
socket_types = dict(shell=zmq.DEALER, control=zmq.DEALER, stdin=zmq.DEALER, iopub=zmq.SUB)


class ChannelSet:
    """The four message channels to one kernel, each with its own receive task.

    Shell, control and stdin are DEALER sockets sharing the session identity so
    the kernel routes `input_request`s back to us; iopub is a SUB socket
    subscribed to everything. Every received message is decoded and passed to
    `handlers[channel]`; messages that fail to decode are logged and dropped.
    """

    def __init__(self, info:ConnectionInfo, codec:MessageCodec, handlers:dict[str, Callable], context:zmq.asyncio.Context|None=None):
        store_attr("info,codec,handlers")
        self.context = context or zmq.asyncio.Context.instance()
        self.sockets, self.tasks = {}, {}
        self.closed = False

    def open(self):
        "Connect all channel sockets and start their receive loops."
        if self.sockets: return
        if self.closed: raise ConnectionClosed("channels already closed")
        try:
            for name, kind in socket_types.items():
                sock = self.context.socket(kind)
                sock.linger = 0
                if kind == zmq.DEALER: sock.identity = self.codec.identity
                else: sock.setsockopt(zmq.SUBSCRIBE, b"")
                self.sockets[name] = sock
                sock.connect(self.info.addr(getattr(self.info, f"{name}_port")))
        except zmq.ZMQError as exc:
            self._close_sockets()
            raise KernelConnectionError(f"cannot connect {name} channel to {self.info.ip}: {exc}") from exc
        for name, sock in self.sockets.items(): self.tasks[name] = asyncio.create_task(self._recv_loop(name, sock), name=f"kernelmux-{name}")

    async def send(self, channel:str, msg:dict):
        "Encode `msg` and send it on `channel` as one multipart message."
        sock = self.sockets.get(channel)
        if sock is None or self.closed: raise ConnectionClosed(f"{channel} channel is closed")
        _dbg_mod.tlog(log, f"{channel} send", msg)
        try: await sock.send_multipart(self.codec.encode(msg))
        except zmq.ZMQError as exc: raise KernelConnectionError(f"{channel} send failed: {exc}") from exc

    async def _recv_loop(self, name:str, sock:zmq.asyncio.Socket):
        handler = self.handlers.get(name)
        while not self.closed:
            try: frames = await sock.recv_multipart()
            except zmq.ZMQError as exc:
                if not self.closed: log.warning("%s receive failed: %s", name, exc)
                return
            try: msg = self.codec.decode(frames)
            except ProtocolError as exc:
                log.warning("Dropping %s message: %s", name, exc)
                continue
            _dbg_mod.tlog(log, f"{name} recv", msg)
            if handler is None: continue
            try:
                res = handler(msg)
                if inspect.isawaitable(res): await res
            except asyncio.CancelledError: raise
            except Exception: log.exception("%s handler failed for %s", name, msg_type(msg))

    async def close(self):
        "Stop receive loops and close sockets; safe to call more than once."
        if self.closed: return
        self.closed = True
        current = asyncio.current_task()
        tasks = [t for t in self.tasks.values() if t is not current]
        for task in tasks: task.cancel()
        if tasks: await asyncio.gather(*tasks, return_exceptions=True)
        self._close_sockets()

    def _close_sockets(self):
        for sock in self.sockets.values(): sock.close(0)
        self.sockets.clear()


class Heartbeat:
    "REQ/REP echo loop that reports loss and recovery of the kernel's heartbeat."

    def __init__(self, context:zmq.asyncio.Context, addr:str, interval:float=3.0, timeout:float=3.0,
        on_change:Callable[[bool], None]|None=None):
        store_attr()
        self.beating = True
        self.misses = 0
        self.sock = self.task = None

    def start(self):
        if self.task is None: self.task = asyncio.create_task(self._run(), name="kernelmux-hb")

    async def stop(self):
        task, self.task = self.task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._close_socket()

    def _open_socket(self):
        sock = self.context.socket(zmq.REQ)
        sock.linger = 0
        sock.connect(self.addr)
        self.sock = sock

    def _close_socket(self):
        if self.sock is not None: self.sock.close(0)
        self.sock = None

    async def ping(self)->bool:
        "Send one heartbeat and wait up to `timeout` for the echo."
        if self.sock is None: self._open_socket()
        try:
            await self.sock.send(b"ping")
            if await self.sock.poll(int(self.timeout * 1000), zmq.POLLIN):
                await self.sock.recv()
                return True
        except zmq.ZMQError as exc: log.debug("Heartbeat error on %s: %s", self.addr, exc)
        # A REQ socket cannot send again until it gets a reply.
        self._close_socket()
        return False

    async def _run(self):
        loop = asyncio.get_running_loop()
        try:
            while True:
                start = loop.time()
                self._record(await self.ping())
                await asyncio.sleep(max(0.0, self.interval - (loop.time() - start)))
        finally: self._close_socket()

    def _record(self, ok:bool):
        missed, self.misses = self.misses, 0 if ok else self.misses + 1
        if ok == self.beating: return
        self.beating = ok
        if ok: log.info("Heartbeat resumed on %s after %d missed beats", self.addr, missed)
        else: log.warning("No heartbeat from %s within %.1fs", self.addr, self.timeout)
        if self.on_change is not None: self.on_change(ok)
