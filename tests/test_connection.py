import asyncio, logging
import pytest
from jupyter_client.session import Session
from kernelmux.errors import ConnectionClosed, ExecutionError, ExecutionTimeout, KernelConnectionError, RequestTimeout
from kernelmux.transport import Heartbeat
from kernelmux.types import KernelState
from .kernel_utils import *


async def _finish(peer, req, reply=None, stdout=""):
    "Play a well-behaved kernel's answer to `req`: busy, output, reply, idle."
    await peer.status("busy", req)
    if stdout: await peer.publish("stream", dict(name="stdout", text=stdout), req)
    await peer.reply(req, reply or dict(status="ok", execution_count=1))
    await peer.status("idle", req)


def test_kernel_info_round_trip():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.kernel_info(timeout=TIMEOUT))
            req = await peer.recv("shell")
            assert req["header"]["msg_type"] == "kernel_info_request"
            assert req["idents"] == [conn.codec.identity]
            await peer.reply(req, dict(status="ok", protocol_version="5.3"))
            assert (await task)["protocol_version"] == "5.3"
            assert conn.pending == {}
    asyncio.run(_run())


def test_wait_for_ready_needs_iopub_idle():
    async def _run():
        async with peer_connection(ready=False) as (peer, conn):
            ready = asyncio.create_task(conn.wait_for_ready(TIMEOUT, interval=0.2))
            first = await peer.recv()
            assert first["header"]["msg_type"] == "kernel_info_request"
            # reply on shell whose iopub status never reaches the client
            await peer.reply(first, dict(status="ok", protocol_version="5.3"))
            second = await peer.recv()
            assert second["header"]["msg_type"] == "kernel_info_request"
            assert second["header"]["msg_id"] != first["header"]["msg_id"] and not ready.done()
            await peer.reply(second, dict(status="ok", protocol_version="5.4"))
            while not ready.done():
                await peer.status("idle", second)
                await asyncio.sleep(0.05)
            assert (await ready)["protocol_version"] == "5.4"
            assert conn.pending == {} and conn.state is KernelState.IDLE
    asyncio.run(_run())


def test_wait_for_ready_accepts_late_answer_to_earlier_attempt():
    async def _run():
        async with peer_connection(ready=False) as (peer, conn):
            ready = asyncio.create_task(conn.wait_for_ready(TIMEOUT, interval=0.1))
            first = await peer.recv()
            await peer.recv()
            await peer.reply(first, dict(status="ok", protocol_version="5.3"))
            while not ready.done():
                await peer.status("idle", first)
                await asyncio.sleep(0.05)
            assert (await ready)["protocol_version"] == "5.3"
            assert conn.pending == {}
    asyncio.run(_run())


def test_wait_for_ready_timeout():
    async def _run():
        async with peer_connection(ready=False) as (peer, conn):
            with pytest.raises(RequestTimeout, match="iopub"): await conn.wait_for_ready(0.5, interval=0.1)
            assert conn.pending == {}
            sent = 0
            while True:
                try: await peer.recv(timeout=0.2)
                except asyncio.TimeoutError: break
                sent += 1
            assert sent >= 2
    asyncio.run(_run())


def test_execute_waits_for_idle_after_reply():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("print('hi')", timeout=TIMEOUT))
            req = await peer.recv()
            assert req["content"]["code"] == "print('hi')"
            assert req["content"]["allow_stdin"] is False
            await peer.status("busy", req)
            await peer.publish("execute_input", dict(code="print('hi')", execution_count=1), req)
            await peer.publish("stream", dict(name="stdout", text="hi\n"), req)
            await peer.reply(req, dict(status="ok", execution_count=1))
            await asyncio.sleep(0.2)
            assert not task.done()
            await peer.status("idle", req)
            out = await task
            assert out.ok and out.stdout == "hi\n" and out.execution_count == 1
            assert out.msg_id == req["header"]["msg_id"]
    asyncio.run(_run())


def test_execute_waits_for_reply_after_idle():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("x", timeout=TIMEOUT))
            req = await peer.recv()
            await peer.status("busy", req)
            await peer.publish("stream", dict(name="stderr", text="warn\n"), req)
            await peer.publish("execute_result", dict(execution_count=4, data={"text/plain": "42"}, metadata={}), req)
            await peer.status("idle", req)
            await asyncio.sleep(0.2)
            assert not task.done()
            await peer.reply(req, dict(status="ok", execution_count=4))
            out = await task
            assert out.stderr == "warn\n" and out.text == "42" and out.execution_count == 4
    asyncio.run(_run())


def test_execute_error_from_iopub_and_reply():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("1/0", timeout=TIMEOUT))
            req = await peer.recv()
            err = dict(ename="ZeroDivisionError", evalue="division by zero", traceback=["tb1", "tb2"])
            await peer.publish("error", err, req)
            await _finish(peer, req, dict(status="error", execution_count=1, **err))
            out = await task
            assert not out.ok and out.status == "error"
            assert (out.error.ename, out.error.traceback) == ("ZeroDivisionError", ["tb1", "tb2"])

            task = asyncio.create_task(conn.execute("boom()", timeout=TIMEOUT, raise_errors=True))
            req = await peer.recv()
            await _finish(peer, req, dict(status="error", ename="NameError", evalue="boom", traceback=[]))
            with pytest.raises(ExecutionError) as exc: await task
            assert exc.value.ename == "NameError" and exc.value.output.status == "error"
    asyncio.run(_run())


def test_execute_timeout_evicts_and_connection_stays_usable():
    async def _run():
        async with peer_connection() as (peer, conn):
            with pytest.raises(ExecutionTimeout): await conn.execute("while True: pass", timeout=0.3)
            assert conn.pending == {}
            stale = await peer.recv()
            await _finish(peer, stale)
            task = asyncio.create_task(conn.execute("1", timeout=TIMEOUT))
            req = await peer.recv()
            assert req["header"]["msg_id"] != stale["header"]["msg_id"]
            await _finish(peer, req, dict(status="ok", execution_count=2), stdout="fresh")
            out = await task
            assert out.stdout == "fresh" and out.execution_count == 2
    asyncio.run(_run())


def test_request_timeout():
    async def _run():
        async with peer_connection() as (peer, conn):
            with pytest.raises(RequestTimeout): await conn.kernel_info(timeout=0.2)
            assert conn.pending == {}
    asyncio.run(_run())


def test_close_rejects_pending():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("import time; time.sleep(60)"))
            await peer.recv()
            await conn.close("kernel went away")
            with pytest.raises(ConnectionClosed, match="went away"): await task
            assert conn.pending == {} and conn.closed
            with pytest.raises(KernelConnectionError): await conn.kernel_info()
            with pytest.raises(ConnectionClosed): await conn.connect()
    asyncio.run(_run())


def test_executes_are_serialized():
    async def _run():
        async with peer_connection() as (peer, conn):
            first = asyncio.create_task(conn.execute("a", timeout=TIMEOUT))
            second = asyncio.create_task(conn.execute("b", timeout=TIMEOUT))
            req = await peer.recv()
            assert req["content"]["code"] == "a"
            with pytest.raises(asyncio.TimeoutError): await peer.recv(timeout=0.2)
            await _finish(peer, req)
            await first
            req = await peer.recv()
            assert req["content"]["code"] == "b"
            await _finish(peer, req)
            await second
    asyncio.run(_run())


def test_stdin_denied_without_handler():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("input()", allow_stdin=True, timeout=TIMEOUT))
            req = await peer.recv()
            assert req["content"]["allow_stdin"] is True
            ask = await peer.send("stdin", "input_request", dict(prompt="name? ", password=False), parent=req)
            answer = await peer.recv("stdin")
            assert answer["header"]["msg_type"] == "input_reply"
            assert answer["content"]["value"] == ""
            assert answer["parent_header"]["msg_id"] == ask["header"]["msg_id"]
            await _finish(peer, req)
            await task
    asyncio.run(_run())


def test_stdin_handler_answers():
    async def _answer(prompt, password): return f"{prompt}bob{'*' if password else ''}"
    async def _run():
        async with peer_connection(input_handler=_answer) as (peer, conn):
            task = asyncio.create_task(conn.execute("input()", allow_stdin=True, timeout=TIMEOUT))
            req = await peer.recv()
            await peer.send("stdin", "input_request", dict(prompt="name? ", password=True), parent=req)
            assert (await peer.recv("stdin"))["content"]["value"] == "name? bob*"
            await _finish(peer, req)
            await task
    asyncio.run(_run())


def test_stdin_handler_failure_sends_empty(caplog):
    async def _broken(prompt, password): raise RuntimeError("no terminal")
    async def _run():
        async with peer_connection(input_handler=_broken) as (peer, conn):
            task = asyncio.create_task(conn.execute("input()", allow_stdin=True, timeout=TIMEOUT))
            req = await peer.recv()
            await peer.send("stdin", "input_request", dict(prompt="name? ", password=False), parent=req)
            assert (await peer.recv("stdin"))["content"]["value"] == ""
            await _finish(peer, req)
            await task
    with caplog.at_level(logging.ERROR, logger="kernelmux"): asyncio.run(_run())
    assert "Input handler failed" in caplog.text


def test_status_and_stream_callbacks_see_foreign_messages():
    statuses, streams = [], []
    async def _run():
        async with peer_connection(on_status=lambda s, p: statuses.append((s, p)), on_stream=lambda n, t: streams.append((n, t))) as (peer, conn):
            assert conn.state is KernelState.IDLE
            statuses.clear()
            await peer.publish("status", dict(execution_state="starting"), session=Session(key=b"not-the-key"))
            await peer.status("busy")
            await peer.publish("stream", dict(name="stderr", text="from elsewhere"))
            await wait_until(lambda: streams, err="no stream callback")
            assert conn.state is KernelState.BUSY
    asyncio.run(_run())
    assert statuses == [(KernelState.BUSY, None)]
    assert streams == [("stderr", "from elsewhere")]


def test_clear_output():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.execute("animate()", timeout=TIMEOUT))
            req = await peer.recv()
            await peer.publish("display_data", dict(data={"text/plain": "frame0"}, metadata={}), req)
            await peer.publish("clear_output", dict(wait=False), req)
            await peer.publish("stream", dict(name="stdout", text="a"), req)
            await peer.publish("clear_output", dict(wait=True), req)
            await peer.publish("display_data", dict(data={"text/plain": "frame1"}, metadata={}), req)
            await peer.publish("stream", dict(name="stdout", text="b"), req)
            await _finish(peer, req)
            out = await task
            assert out.stdout == "b"
            assert [d["data"]["text/plain"] for d in out.display_data] == ["frame1"]
    asyncio.run(_run())


def test_introspection_requests():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.complete("imp", timeout=TIMEOUT))
            req = await peer.recv()
            assert req["header"]["msg_type"] == "complete_request" and req["content"] == dict(code="imp", cursor_pos=3)
            await peer.reply(req, dict(status="ok", matches=["import"], cursor_start=0, cursor_end=3, metadata={}))
            assert (await task)["matches"] == ["import"]

            task = asyncio.create_task(conn.inspect("len", detail_level=1, timeout=TIMEOUT))
            req = await peer.recv()
            assert req["content"] == dict(code="len", cursor_pos=3, detail_level=1)
            await peer.reply(req, dict(status="ok", found=True, data={}, metadata={}))
            assert (await task)["found"]

            task = asyncio.create_task(conn.is_complete("for x in y:", timeout=TIMEOUT))
            req = await peer.recv()
            await peer.reply(req, dict(status="incomplete", indent="    "))
            assert (await task)["status"] == "incomplete"
    asyncio.run(_run())


def test_interrupt_and_shutdown_use_control():
    async def _run():
        async with peer_connection() as (peer, conn):
            task = asyncio.create_task(conn.interrupt(timeout=TIMEOUT))
            req = await peer.recv("control")
            assert req["header"]["msg_type"] == "interrupt_request"
            await peer.reply(req, channel="control")
            assert (await task)["status"] == "ok"

            task = asyncio.create_task(conn.shutdown(timeout=TIMEOUT))
            req = await peer.recv("control")
            assert req["header"]["msg_type"] == "shutdown_request" and req["content"] == dict(restart=False)
            await peer.reply(req, dict(status="ok", restart=False), channel="control")
            assert (await task)["restart"] is False
    asyncio.run(_run())


def test_heartbeat_reports_loss_once():
    async def _run():
        peer = FakePeer()
        peer.start_heartbeat()
        changes = []
        hb = Heartbeat(peer.context, peer.info.addr(peer.info.hb_port), interval=0.1, timeout=0.2, on_change=changes.append)
        try:
            assert await hb.ping()
            hb.start()
            await asyncio.sleep(0.5)
            assert changes == [] and hb.beating
            peer.hb_task.cancel()
            await wait_until(lambda: changes, timeout=5, err="heartbeat loss not reported")
            await asyncio.sleep(0.6)
            assert changes == [False] and hb.misses >= 2
        finally:
            await hb.stop()
            await peer.close()
            peer.context.destroy(linger=0)
    asyncio.run(_run())


def test_heartbeat_recovery_reported(caplog):
    changes = []
    hb = Heartbeat(None, "tcp://127.0.0.1:1", on_change=changes.append)
    with caplog.at_level(logging.INFO, logger="kernelmux"):
        for ok in (True, False, False, False, True, True): hb._record(ok)
    assert changes == [False, True] and hb.misses == 0
    assert "after 3 missed beats" in caplog.text
