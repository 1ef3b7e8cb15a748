"Signed Jupyter wire-message encoding on top of `jupyter_client.session.Session`."
import getpass, logging
from jupyter_client.session import Session
from .errors import ProtocolError

log = logging.getLogger("kernelmux.codec")


def _username()->str:
    try: return getpass.getuser()
    except Exception: return "kernelmux"


def parent_msg_id(msg:dict)->str|None: return (msg.get("parent_header") or {}).get("msg_id")


def msg_type(msg:dict)->str|None: return (msg.get("header") or {}).get("msg_type")


class MessageCodec:
    """Encode and decode messages for one kernel connection.

    `encode` returns the full frame list (identities, delimiter, HMAC signature,
    header, parent header, metadata, content, buffers) that must be sent as a
    single multipart message. `decode` verifies the signature against this
    codec's key and raises `ProtocolError` for anything unverifiable.
    """

    def __init__(self, key:str|bytes, signature_scheme:str="hmac-sha256", username:str|None=None):
        if isinstance(key, str): key = key.encode()
        self.session = Session(key=key, signature_scheme=signature_scheme, username=username or _username())

    @property
    def session_id(self)->str: return self.session.session

    @property
    def identity(self)->bytes: return self.session.bsession

    def msg(self, msg_type:str, content:dict|None=None, parent:dict|None=None, metadata:dict|None=None)->dict:
        "Build a new message with a fresh msg_id; `parent` may be a message or a header."
        return self.session.msg(msg_type, content=content or {}, parent=parent, metadata=metadata)

    def encode(self, msg:dict, ident:list[bytes]|bytes|None=None)->list[bytes]:
        frames = self.session.serialize(msg, ident=ident)
        frames.extend(msg.get("buffers") or [])
        return frames

    def decode(self, frames:list)->dict:
        "Verify and parse `frames`; raise `ProtocolError` on bad framing, signature, or JSON."
        frames = [bytes(f.bytes if hasattr(f, "bytes") else f) for f in frames]
        try:
            idents, frames = self.session.feed_identities(frames, copy=True)
            msg = self.session.deserialize(frames, content=True, copy=True)
        except (ValueError, TypeError, KeyError, IndexError) as exc: raise ProtocolError(str(exc)) from exc
        msg["idents"] = idents
        return msg
