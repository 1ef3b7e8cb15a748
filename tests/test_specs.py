from kernelmux.specs import JupyterSpecResolver, SpecResolver, StaticSpecResolver, match_spec
from kernelmux.types import KernelSpec


def _spec(name, language): return KernelSpec(name, ["run", "{connection_file}"], language=language)

SPECS = [_spec("python3", "python"), _spec("ir", "R"), _spec("xcpp17", "C++17"), _spec("xcpp", "c++"), _spec("apython", "python")]


def test_exact_name_wins():
    assert match_spec(SPECS, "python3").name == "python3"
    assert match_spec(SPECS, "xcpp17").name == "xcpp17"


def test_language_match_case_insensitive_by_name():
    assert match_spec(SPECS, "Python").name == "apython"
    assert match_spec(SPECS, "r").name == "ir"


def test_partial_language_then_alias():
    assert match_spec(SPECS, "c++1").name == "xcpp17"
    assert match_spec(SPECS, "cpp").name == "xcpp"
    assert match_spec(SPECS, "cobol") is None


def test_static_resolver():
    resolver = StaticSpecResolver(SPECS)
    assert isinstance(resolver, SpecResolver)
    assert resolver.discover() == SPECS
    assert resolver.find_by_name_or_language("ir").language == "R"


class _Specs:
    def __init__(self, specs): self.specs = specs
    def get_all_specs(self): return self.specs


def test_jupyter_resolver_skips_broken_specs():
    specs = dict(fake=dict(resource_dir="/k/fake", spec=dict(argv=["fake", "-f", "{connection_file}"], language="python", display_name="Fake")),
        broken=dict(resource_dir="/k/broken", spec=dict(argv=["b"], language="python", interrupt_mode="weird")))
    resolver = JupyterSpecResolver(_Specs(specs))
    assert isinstance(resolver, SpecResolver)
    [spec] = resolver.discover()
    assert (spec.name, spec.display_name, spec.resource_dir) == ("fake", "Fake", "/k/fake")
    assert resolver.find_by_name_or_language("python").name == "fake"
