"""CLI entry points for vmachine."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from vmachine.config import load_settings
from vmachine.constants import DEFAULT_MACHINE_NAME, GIB, MIB
from vmachine.exceptions import AggregateError, ManagerError, NotFoundError
from vmachine.models import (
    ConnectionEntry,
    InitOptions,
    ListResponse,
    Mount,
    RemoveOptions,
    SetOptions,
    StartOptions,
    StopOptions,
    VMType,
)
from vmachine.providers import Provider, get_provider
from vmachine.utils import log


def _bool_arg(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got '{raw}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmachine", description="Manage local virtual machines")
    parser.add_argument(
        "--provider",
        choices=[t.value for t in VMType],
        default=None,
        help="Virtualization backend (default: VMACHINE_PROVIDER or qemu)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create a new machine")
    init.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    init.add_argument("--cpus", type=int, default=None)
    init.add_argument("--memory", "-m", type=int, default=None, help="Memory in MiB")
    init.add_argument("--disk-size", type=int, default=None, help="Disk size in GiB")
    init.add_argument("--image", default="", help="Local image path or http(s) URL")
    init.add_argument("--ignition-path", default="", help="Use this ignition file instead of generating one")
    init.add_argument("--username", default="")
    init.add_argument("--rootful", action="store_true")
    init.add_argument("--now", action="store_true", help="Start the machine after creating it")
    init.add_argument("--volume", "-v", action="append", default=[], metavar="SRC[:DST[:ro]]")
    init.add_argument("--timezone", default="")
    init.add_argument("--default", dest="is_default", action="store_true",
                      help="Make the machine's connection the default")

    for name, help_text in (("start", "Start a machine"), ("stop", "Stop a machine")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
        cmd.add_argument("--quiet", "-q", action="store_true")

    sub.add_parser("list", aliases=["ls"], help="List machines")

    inspect = sub.add_parser("inspect", help="Show machine details")
    inspect.add_argument("names", nargs="*")
    inspect.add_argument("--format", default="", help="Python format template, e.g. '{name} {state}'")

    set_cmd = sub.add_parser("set", help="Change settings of a stopped machine")
    set_cmd.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    set_cmd.add_argument("--cpus", type=int, default=None)
    set_cmd.add_argument("--memory", "-m", type=int, default=None)
    set_cmd.add_argument("--disk-size", type=int, default=None)
    set_cmd.add_argument("--rootful", type=_bool_arg, default=None)

    rm = sub.add_parser("rm", help="Remove a machine")
    rm.add_argument("name", nargs="?", default=DEFAULT_MACHINE_NAME)
    rm.add_argument("--force", "-f", action="store_true", help="Stop the machine first if it is running")
    rm.add_argument("--save-keys", action="store_true")
    rm.add_argument("--save-ignition", action="store_true")
    rm.add_argument("--save-image", action="store_true")
    rm.add_argument("-y", dest="yes", action="store_true", help="Do not prompt for confirmation")

    conn = sub.add_parser("connection", help="Manage machine SSH connections")
    conn_sub = conn.add_subparsers(dest="connection_command", required=True)
    conn_sub.add_parser("list", aliases=["ls"], help="List connections")
    conn_default = conn_sub.add_parser("default", help="Make a connection the default")
    conn_default.add_argument("name")
    return parser


def render_inspect(data: Dict[str, Any], template: str) -> str:
    if not template:
        return json.dumps(data, indent=4, ensure_ascii=False)
    values = dict(data)
    values.update({key.lower(): value for key, value in data.items()})
    return template.format(**values)


def _human_size(num_bytes: int) -> str:
    if num_bytes >= GIB:
        return f"{num_bytes / GIB:g}GiB"
    return f"{num_bytes / MIB:g}MiB"


def print_list(responses: List[ListResponse]) -> None:
    header = f"{'NAME':<24} {'VM TYPE':<8} {'LAST UP':<26} {'CPUS':>4} {'MEMORY':>9} {'DISK SIZE':>10}"
    print(header)
    for item in responses:
        if item.running:
            last_up = "Currently running"
        elif item.starting:
            last_up = "Currently starting"
        elif item.last_up is not None:
            last_up = item.last_up.strftime("%Y-%m-%d %H:%M:%S %Z")
        else:
            last_up = "Never"
        print(
            f"{item.name:<24} {item.vm_type:<8} {last_up:<26} {item.cpus:>4} "
            f"{_human_size(item.memory):>9} {_human_size(item.disk_size):>10}"
        )


def print_connections(default: str, entries: List[ConnectionEntry]) -> None:
    print(f"{'NAME':<24} {'URI':<56} {'IDENTITY':<40} DEFAULT")
    for entry in entries:
        print(f"{entry.name:<24} {entry.uri:<56} {entry.identity:<40} {str(entry.name == default).lower()}")


def _confirm(message: str) -> bool:
    print(message, end="")
    try:
        answer = input("Are you sure you want to continue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _run(args: argparse.Namespace, provider: Provider, settings) -> int:
    if args.command == "init":
        opts = InitOptions(
            name=args.name,
            cpus=args.cpus if args.cpus is not None else settings.cpus,
            memory=args.memory if args.memory is not None else settings.memory,
            disk_size=args.disk_size if args.disk_size is not None else settings.disk_size,
            image_path=args.image,
            ignition_path=args.ignition_path,
            username=args.username,
            rootful=args.rootful,
            is_default=args.is_default,
            mounts=[Mount.parse(spec) for spec in args.volume],
            timezone=args.timezone,
        )
        provider.new_machine(opts)
        if args.now:
            provider.start(args.name, StartOptions())
        return 0

    if args.command == "start":
        provider.start(args.name, StartOptions(quiet=args.quiet))
        return 0

    if args.command == "stop":
        provider.stop(args.name, StopOptions(quiet=args.quiet))
        return 0

    if args.command in ("list", "ls"):
        print_list(provider.list())
        return 0

    if args.command == "inspect":
        names = args.names or [DEFAULT_MACHINE_NAME]
        rendered = []
        status = 0
        for name in names:
            try:
                info = provider.inspect(name)
            except NotFoundError as exc:
                log("ERROR", str(exc))
                status = 1
                continue
            rendered.append(info.to_dict())
        if args.format:
            for item in rendered:
                print(render_inspect(item, args.format))
        else:
            print(json.dumps(rendered, indent=4, ensure_ascii=False))
        return status

    if args.command == "set":
        provider.set(
            args.name,
            SetOptions(cpus=args.cpus, memory=args.memory, disk_size=args.disk_size, rootful=args.rootful),
        )
        return 0

    if args.command == "rm":
        message, do_remove = provider.remove(
            args.name,
            RemoveOptions(
                force=args.force,
                save_keys=args.save_keys,
                save_ignition=args.save_ignition,
                save_image=args.save_image,
            ),
        )
        if not args.yes and not _confirm(message):
            log("INFO", "Removal cancelled")
            return 0
        failures = do_remove()
        if failures:
            log("WARN", f"Machine {args.name} removed with {len(failures)} cleanup error(s)")
            return 1
        log("SUCCESS", f"Machine {args.name} removed")
        return 0

    if args.command == "connection":
        if args.connection_command == "default":
            provider.registry.change_default(args.name)
            log("SUCCESS", f"Default connection set to {args.name}")
            return 0
        print_connections(provider.registry.read().default, provider.registry.list())
        return 0

    raise ManagerError(f"Unknown command '{args.command}'")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        vm_type = VMType.parse(args.provider or settings.provider)
        provider = get_provider(vm_type, settings)
        return _run(args, provider, settings)
    except AggregateError as exc:
        for err in exc.errors:
            log("ERROR", str(err))
        return 1
    except (ManagerError, ValueError) as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
