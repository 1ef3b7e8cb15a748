import argparse
import asyncio
import sys

from . import debug
from .errors import KernelError
from .manager import KernelManager


def _print_output(out) -> None:
    if out.stdout: sys.stdout.write(out.stdout)
    if out.stderr: sys.stderr.write(out.stderr)
    if out.text is not None: print(out.text)
    if out.error is not None:
        tb = "\n".join(out.error.traceback) or f"{out.error.ename}: {out.error.evalue}"
        print(tb, file=sys.stderr)


def _list_specs(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="kernelmux specs")
    parser.parse_args(argv)

    async def _run():
        async with KernelManager() as km: return await km.available_kernels()

    specs = asyncio.run(_run())
    if not specs:
        print("No kernel specs found", file=sys.stderr)
        return 1
    width = max(len(s.name) for s in specs)
    for s in specs: print(f"{s.name:<{width}}  {s.language:<12}  {s.display_name}")
    return 0


def _run_code(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="kernelmux run")
    parser.add_argument("-k", "--kernel", required=True, help="Kernel spec name or language")
    parser.add_argument("-s", "--session", default="default")
    parser.add_argument("--cwd", help="Working directory for the kernel process")
    parser.add_argument("--timeout", type=float, help="Execution deadline in seconds")
    src = parser.add_mutually_exclusive_group()
    src.add_argument("-c", "--code", help="Code to execute")
    src.add_argument("file", nargs="?", help="File whose contents to execute")
    args = parser.parse_args(argv)

    if args.code is not None:
        code = args.code
    elif args.file:
        with open(args.file, encoding="utf-8") as f: code = f.read()
    else:
        code = sys.stdin.read()

    opts = {} if args.timeout is None else dict(timeout=args.timeout)
    async def _run():
        async with KernelManager() as km:
            return await km.execute_on_session(args.session, args.kernel, code, cwd=args.cwd, **opts)

    try:
        out = asyncio.run(_run())
    except KernelError as exc:
        print(f"kernelmux: {exc}", file=sys.stderr)
        return 1
    _print_output(out)
    return 0 if out.ok else 1


def main() -> None:
    debug.setup()
    argv = sys.argv[1:]
    if argv and argv[0] == "specs":
        raise SystemExit(_list_specs(argv[1:]))
    if argv and argv[0] == "run":
        raise SystemExit(_run_code(argv[1:]))
    print("usage: kernelmux {specs,run} ...", file=sys.stderr)
    raise SystemExit(2)


if __name__ == "__main__":
    main()
