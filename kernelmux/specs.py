"Kernel spec lookup by name or language."
import logging
from typing import Iterable, Protocol, runtime_checkable
from jupyter_client.kernelspec import KernelSpecManager
from .types import KernelSpec

log = logging.getLogger("kernelmux.specs")

# Spec names commonly used by kernels whose `language` field doesn't match the name users type.
language_aliases = {
    "python": ("python3", "python", "python2"), "python3": ("python3", "python"), "r": ("ir", "r"),
    "julia": ("julia",), "ruby": ("ruby",), "javascript": ("javascript", "nodejs", "node"),
    "typescript": ("typescript", "tslab"), "rust": ("rust", "evcxr"), "go": ("gophernotes", "go"),
    "c": ("c", "xeus-cling"), "c++": ("c++", "xcpp", "xeus-cling"), "cpp": ("c++", "xcpp", "xeus-cling"),
    "java": ("java", "ijava"), "scala": ("scala", "almond"), "haskell": ("haskell", "ihaskell"),
    "lua": ("lua", "ilua"), "perl": ("perl", "iperl"), "bash": ("bash", "sh"), "sh": ("bash", "sh"),
    "shell": ("bash", "sh"), "octave": ("octave",), "matlab": ("matlab", "imatlab"), "maxima": ("maxima",),
    "sql": ("sql",), "sqlite": ("sqlite3",)}


@runtime_checkable
class SpecResolver(Protocol):
    def discover(self)->list[KernelSpec]: ...
    def find_by_name_or_language(self, name:str)->KernelSpec|None: ...


def match_spec(specs:Iterable[KernelSpec], name:str)->KernelSpec|None:
    """Pick the spec for `name`: exact spec name, exact language, partial language, then known aliases.

    Language matches are case-insensitive and ties are broken by spec name.
    """
    specs = sorted(specs, key=lambda s: s.name)
    by_name = {s.name: s for s in specs}
    if name in by_name: return by_name[name]
    lang = name.lower()
    exact = [s for s in specs if s.language.lower() == lang]
    if exact: return exact[0]
    partial = [s for s in specs if lang in s.language.lower()]
    if partial: return partial[0]
    for alias in language_aliases.get(lang, ()):
        if alias in by_name: return by_name[alias]
    return None


class StaticSpecResolver:
    "Resolver over a fixed list of specs."

    def __init__(self, specs:Iterable[KernelSpec]=()): self.specs = list(specs)

    def discover(self)->list[KernelSpec]: return list(self.specs)

    def find_by_name_or_language(self, name:str)->KernelSpec|None: return match_spec(self.specs, name)


class JupyterSpecResolver:
    "Resolver backed by the kernelspecs installed for `jupyter_client`."

    def __init__(self, manager:KernelSpecManager|None=None): self.manager = manager or KernelSpecManager()

    def discover(self)->list[KernelSpec]:
        specs = []
        for name, info in self.manager.get_all_specs().items():
            try: specs.append(KernelSpec.from_jupyter(name, info.get("spec") or {}, info.get("resource_dir", "")))
            except (TypeError, ValueError) as err: log.warning("Skipping kernel spec %s: %s", name, err)
        return specs

    def find_by_name_or_language(self, name:str)->KernelSpec|None: return match_spec(self.discover(), name)
