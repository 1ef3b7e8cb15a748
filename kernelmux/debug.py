"Debug infrastructure for kernelmux with tiered logging and faulthandler support."
import faulthandler, logging, os, signal, sys

def envbool(name: str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

enabled = envbool("KERNELMUX_DEBUG")
trace_msgs = envbool("KERNELMUX_DEBUG_MSGS")

def log_level(level:int|str|None=None)->int:
    "Resolve `level` (number or name), else `KERNELMUX_LOG_LEVEL`, else DEBUG when debugging and WARNING otherwise."
    if level is None: level = os.environ.get("KERNELMUX_LOG_LEVEL") or (logging.DEBUG if enabled else logging.WARNING)
    if isinstance(level, str): level = logging.getLevelName(level.strip().upper())
    return level if isinstance(level, int) else logging.WARNING

def setup(level:int|str|None=None):
    "Initialize logging; faulthandler/SIGUSR1 dumps too when `KERNELMUX_DEBUG` is set."
    root = logging.getLogger()
    level = log_level(level)
    if not root.handlers: logging.basicConfig(level=level, stream=sys.stderr, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("kernelmux").setLevel(level)
    if not enabled: return
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(log, prefix: str, msg: dict):
    "Log message flow at high level: msg_type, msg_id, parent msg_id."
    if not trace_msgs: return
    h = msg.get("header") or {}
    p = msg.get("parent_header") or {}
    log.warning("%s type=%s id=%s parent=%s", prefix, h.get("msg_type"), h.get("msg_id"), p.get("msg_id"))
