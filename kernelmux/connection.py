import asyncio, inspect, logging
from dataclasses import dataclass
from typing import Awaitable, Callable
from fastcore.basics import store_attr
import zmq.asyncio
from .codec import MessageCodec, msg_type, parent_msg_id
from .errors import ConnectionClosed, ExecutionTimeout, KernelConnectionError, RequestTimeout
from .transport import ChannelSet, Heartbeat
from .types import ConnectionInfo, ErrorContent, ExecutionOutput, KernelState

log = logging.getLogger("kernelmux.connection")
StatusCallback = Callable[[KernelState, str|None], None]
StreamCallback = Callable[[str, str], None]
InputHandler = Callable[[str, bool], "str|Awaitable[str]"]
output_types = {"stream", "display_data", "update_display_data", "execute_result", "error"}


@dataclass
class PendingRequest:
    "One in-flight request; execute and readiness requests also wait for their iopub `idle`."
    msg_id:str
    msg_type:str
    future:asyncio.Future
    output:ExecutionOutput|None = None
    wait_idle:bool = False
    reply:dict|None = None
    idle:bool = False
    clear_wait:bool = False

    @property
    def complete(self)->bool: return self.reply is not None and (not self.wait_idle or self.idle)


class KernelConnection:
    """Request/reply and event handling over the wire channels of one kernel.

    Replies and iopub events are matched to requests by `parent_header.msg_id`
    through the `pending` table. `on_status` and `on_stream` see every status
    and stream event, including those caused by other clients.
    """

    def __init__(self, info:ConnectionInfo, on_status:StatusCallback|None=None, on_stream:StreamCallback|None=None,
        on_heartbeat:Callable[[bool], None]|None=None, input_handler:InputHandler|None=None,
        context:zmq.asyncio.Context|None=None, hb_interval:float=3.0, hb_timeout:float=3.0, heartbeat:bool=True):
        store_attr("info,on_status,on_stream,on_heartbeat,input_handler")
        self.codec = MessageCodec(info.key, info.signature_scheme)
        self.context = context or zmq.asyncio.Context.instance()
        handlers = dict(shell=self._on_reply, control=self._on_reply, iopub=self._on_iopub, stdin=self._on_stdin)
        self.channels = ChannelSet(info, self.codec, handlers, self.context)
        self.heartbeat = Heartbeat(self.context, info.addr(info.hb_port), hb_interval, hb_timeout, self._on_heartbeat) if heartbeat else None
        self.pending:dict[str, PendingRequest] = {}
        self.state = KernelState.UNKNOWN
        self.connected = self.closed = False
        self.execute_lock = asyncio.Lock()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc): await self.close()

    async def connect(self):
        "Open all five channels; raises `KernelConnectionError` if a socket cannot connect."
        if self.connected: return
        if self.closed: raise ConnectionClosed("connection already closed")
        self.channels.open()
        if self.heartbeat is not None: self.heartbeat.start()
        self.connected = True

    async def close(self, reason:str="connection closed"):
        "Close sockets and reject every pending operation with `ConnectionClosed`."
        if self.closed: return
        self.connected, self.closed = False, True
        if self.heartbeat is not None: await self.heartbeat.stop()
        await self.channels.close()
        self._reject_all(ConnectionClosed(reason))

    def _check_open(self):
        if not self.connected: raise KernelConnectionError("not connected to kernel")

    def _insert(self, msg:dict, output:ExecutionOutput|None=None, wait_idle:bool=False)->PendingRequest:
        header = msg["header"]
        fut = asyncio.get_running_loop().create_future()
        pending = PendingRequest(header["msg_id"], header["msg_type"], fut, output=output, wait_idle=wait_idle or output is not None)
        self.pending[pending.msg_id] = pending
        return pending

    def _evict(self, msg_id:str):
        pending = self.pending.pop(msg_id, None)
        if pending is not None and not pending.future.done(): pending.future.cancel()

    def _reject_all(self, exc:Exception):
        pending, self.pending = list(self.pending.values()), {}
        for p in pending:
            if not p.future.done(): p.future.set_exception(exc)

    def _finish(self, pending:PendingRequest):
        if pending.complete and not pending.future.done(): pending.future.set_result(pending.reply)

    async def request(self, channel:str, msg_type:str, content:dict|None=None, timeout:float|None=None)->dict:
        "Send `msg_type` on `channel` and return the matching reply message."
        self._check_open()
        msg = self.codec.msg(msg_type, content)
        pending = self._insert(msg)
        try:
            await self.channels.send(channel, msg)
            return await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError: raise RequestTimeout(f"no {msg_type.replace('_request', '_reply')} within {timeout}s") from None
        finally: self._evict(pending.msg_id)

    async def execute(self, code:str, silent:bool=False, store_history:bool=True, allow_stdin:bool=False,
        stop_on_error:bool=True, user_expressions:dict|None=None, timeout:float|None=None, raise_errors:bool=False)->ExecutionOutput:
        """Run `code` and collect its output.

        Resolves once both the shell `execute_reply` and the iopub `idle` status
        for this request have arrived, in whichever order. Executes on one
        connection run one at a time. A kernel-reported error is stored in
        `output.error`, or raised as `ExecutionError` when `raise_errors` is set.
        On `timeout` the request is forgotten but the kernel keeps running it.
        """
        self._check_open()
        content = dict(code=code, silent=silent, store_history=store_history, user_expressions=user_expressions or {},
            allow_stdin=allow_stdin, stop_on_error=stop_on_error)
        try: output = await asyncio.wait_for(self._execute(content), timeout)
        except asyncio.TimeoutError: raise ExecutionTimeout(f"execution did not finish within {timeout}s") from None
        return output.raise_for_error() if raise_errors else output

    async def _execute(self, content:dict)->ExecutionOutput:
        async with self.execute_lock:
            self._check_open()
            msg = self.codec.msg("execute_request", content)
            output = ExecutionOutput(msg_id=msg["header"]["msg_id"])
            pending = self._insert(msg, output)
            try:
                await self.channels.send("shell", msg)
                await pending.future
            finally: self._evict(pending.msg_id)
            return output

    async def kernel_info(self, timeout:float|None=None)->dict:
        return (await self.request("shell", "kernel_info_request", timeout=timeout))["content"]

    async def wait_for_ready(self, timeout:float|None=None, interval:float=0.5)->dict:
        """Send `kernel_info_request` every `interval` until one gets both its reply and its iopub `idle`.

        A status parented to one of our own requests shows the iopub subscription
        is live, so output of later requests cannot be lost to a late SUB connect.
        Earlier attempts stay pending, so a late answer to any of them counts.
        Returns the reply content; raises `RequestTimeout` once `timeout` passes.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        attempts = []
        try:
            while True:
                self._check_open()
                wait = interval if deadline is None else min(interval, deadline - loop.time())
                if wait <= 0: raise RequestTimeout(f"kernel did not confirm iopub within {timeout}s ({len(attempts)} kernel_info attempts)")
                msg = self.codec.msg("kernel_info_request")
                attempts.append(self._insert(msg, wait_idle=True))
                await self.channels.send("shell", msg)
                done, _ = await asyncio.wait([p.future for p in attempts], timeout=wait, return_when=asyncio.FIRST_COMPLETED)
                if done: return done.pop().result()["content"]
                log.debug("No kernel_info reply plus idle yet after %d attempts", len(attempts))
        finally:
            for p in attempts: self._evict(p.msg_id)

    async def complete(self, code:str, cursor_pos:int|None=None, timeout:float|None=None)->dict:
        content = dict(code=code, cursor_pos=len(code) if cursor_pos is None else cursor_pos)
        return (await self.request("shell", "complete_request", content, timeout=timeout))["content"]

    async def inspect(self, code:str, cursor_pos:int|None=None, detail_level:int=0, timeout:float|None=None)->dict:
        content = dict(code=code, cursor_pos=len(code) if cursor_pos is None else cursor_pos, detail_level=detail_level)
        return (await self.request("shell", "inspect_request", content, timeout=timeout))["content"]

    async def is_complete(self, code:str, timeout:float|None=None)->dict:
        return (await self.request("shell", "is_complete_request", dict(code=code), timeout=timeout))["content"]

    async def interrupt(self, timeout:float|None=None)->dict:
        "Send `interrupt_request` on the control channel and return the reply content."
        return (await self.request("control", "interrupt_request", timeout=timeout))["content"]

    async def shutdown(self, restart:bool=False, timeout:float|None=None)->dict:
        "Ask the kernel to shut down; the process itself is left to the supervisor."
        return (await self.request("control", "shutdown_request", dict(restart=restart), timeout=timeout))["content"]

    def _on_reply(self, msg:dict):
        pending = self.pending.get(parent_msg_id(msg))
        if pending is None:
            log.debug("Unmatched %s for %s", msg_type(msg), parent_msg_id(msg))
            return
        pending.reply = msg
        if pending.output is not None: _apply_execute_reply(pending.output, msg.get("content") or {})
        self._finish(pending)

    def _on_iopub(self, msg:dict):
        mtype, content, pid = msg_type(msg), msg.get("content") or {}, parent_msg_id(msg)
        pending = self.pending.get(pid) if pid else None
        if mtype == "status":
            self.state = KernelState.from_status(content.get("execution_state"))
            if self.on_status is not None: self.on_status(self.state, pid)
            if pending is not None and self.state is KernelState.IDLE:
                pending.idle = True
                self._finish(pending)
            return
        if mtype == "stream" and self.on_stream is not None: self.on_stream(content.get("name", "stdout"), content.get("text", ""))
        if pending is None or pending.output is None: return
        out = pending.output
        if mtype in output_types and pending.clear_wait:
            _clear_output(out)
            pending.clear_wait = False
        if mtype == "stream":
            if content.get("name") == "stderr": out.stderr += content.get("text", "")
            else: out.stdout += content.get("text", "")
        elif mtype in ("display_data", "update_display_data"): out.display_data.append(content)
        elif mtype == "execute_result":
            out.result = content
            out.execution_count = content.get("execution_count", out.execution_count)
        elif mtype == "error": out.error = ErrorContent.from_content(content)
        elif mtype == "execute_input": out.execution_count = content.get("execution_count", out.execution_count)
        elif mtype == "clear_output":
            if content.get("wait"): pending.clear_wait = True
            else: _clear_output(out)

    async def _on_stdin(self, msg:dict):
        if msg_type(msg) != "input_request": return
        content = msg.get("content") or {}
        value = ""
        if self.input_handler is not None:
            try:
                res = self.input_handler(content.get("prompt", ""), bool(content.get("password", False)))
                value = (await res) if inspect.isawaitable(res) else res
            except Exception:
                log.exception("Input handler failed; sending empty input_reply")
                value = ""
        else: log.debug("No input handler; answering input_request with empty value")
        await self.channels.send("stdin", self.codec.msg("input_reply", dict(value="" if value is None else str(value)), parent=msg))

    def _on_heartbeat(self, ok:bool):
        if self.on_heartbeat is not None: self.on_heartbeat(ok)


def _apply_execute_reply(out:ExecutionOutput, content:dict):
    out.status = content.get("status", "ok")
    if content.get("execution_count") is not None: out.execution_count = content["execution_count"]
    if out.status == "error" and out.error is None: out.error = ErrorContent.from_content(content)


def _clear_output(out:ExecutionOutput):
    out.stdout, out.stderr = "", ""
    out.display_data.clear()
