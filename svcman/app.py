import argparse
import ctypes
import logging
import os
import sys

from svcman.directory import ServiceDirectory
from svcman.errors import ServiceManagerError
from svcman.logging_config import setup_logging
from svcman.settings import Settings
from svcman.values import AcceptedControl, ErrorControl, ServiceType, StartType

APP_NAME = "svcman"
VERSION = "0.1.0"

logger = logging.getLogger(APP_NAME)

START_TYPES = {
    "auto": StartType.AUTO,
    "demand": StartType.DEMAND,
    "disabled": StartType.DISABLED,
    "boot": StartType.BOOT,
    "system": StartType.SYSTEM,
}
ERROR_CONTROLS = {
    "ignore": ErrorControl.IGNORE,
    "normal": ErrorControl.NORMAL,
    "severe": ErrorControl.SEVERE,
    "critical": ErrorControl.CRITICAL,
}
SERVICE_TYPES = {
    "own": ServiceType.WIN32_OWN_PROCESS,
    "share": ServiceType.WIN32_SHARE_PROCESS,
    "kernel": ServiceType.KERNEL_DRIVER,
    "filesystem": ServiceType.FILE_SYSTEM_DRIVER,
}
MUTATING = {"start", "stop", "pause", "continue", "install", "uninstall", "set"}


def is_admin():
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Inspect and control Windows services")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--machine", help="target machine (default: local)")
    parser.add_argument("--config", help="settings file (default: %%APPDATA%%\\svcman\\settings.json)")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="list installed services")
    p.add_argument("--sorted", action="store_true", help="sort by display name")

    p = sub.add_parser("show", help="show one service")
    p.add_argument("name")

    for verb in ("start", "stop", "pause", "continue"):
        p = sub.add_parser(verb, help=f"{verb} a service")
        p.add_argument("name")
        p.add_argument("--wait", action="store_true", help="block until the transition completes")

    p = sub.add_parser("deps", help="list services depending on a service")
    p.add_argument("name")

    p = sub.add_parser("install", help="install a service")
    p.add_argument("name")
    p.add_argument("binary_path")
    p.add_argument("--display-name")
    p.add_argument("--type", choices=SERVICE_TYPES, default="own")
    p.add_argument("--interactive", action="store_true")
    p.add_argument("--start", choices=START_TYPES, default="demand")
    p.add_argument("--error-control", choices=ERROR_CONTROLS, default="normal")
    p.add_argument("--group", default="")
    p.add_argument("--depends", action="append", default=[])
    p.add_argument("--user", default="LocalSystem")
    p.add_argument("--password", default="")

    p = sub.add_parser("uninstall", help="remove a service")
    p.add_argument("name")

    p = sub.add_parser("set", help="change service configuration")
    p.add_argument("name")
    p.add_argument("--type", choices=SERVICE_TYPES)
    p.add_argument("--start", choices=START_TYPES)
    p.add_argument("--error-control", choices=ERROR_CONTROLS)
    p.add_argument("--binary-path")
    p.add_argument("--display-name")
    p.add_argument("--description")
    p.add_argument("--account")
    p.add_argument("--password", default="")

    p = sub.add_parser("export", help="export the service list")
    p.add_argument("format", choices=("csv", "xml"))
    p.add_argument("--sorted", action="store_true")
    p.add_argument("-o", "--output", help="write to file instead of stdout")
    return parser


def _accepts(service) -> str:
    accepted = service.get_service_accept()
    names = [c.name.lower() for c in (AcceptedControl.STOP, AcceptedControl.PAUSE_CONTINUE, AcceptedControl.SHUTDOWN)
             if c in accepted]
    return ", ".join(names) or "-"


def cmd_list(directory, args, settings, out):
    if args.sorted or settings.export.sort_by_display_name:
        directory.sort_by_display_name()
    for s in directory:
        out.write(f"{s.name:<40} {s.get_state().label:<17} {s.display_name}\n")


def cmd_show(directory, args, settings, out):
    s = directory.get_by_name(args.name)
    s.refresh_status()
    proc = s.process()
    fields = [
        ("Name", s.name),
        ("Display name", s.display_name),
        ("State", s.get_state().label),
        ("Start type", s.get_start_type().value),
        ("Binary path", s.get_binary_path()),
        ("User", s.get_user_name()),
        ("Own process", s.own_process()),
        ("Interactive", s.get_interactive()),
        ("Accepts", _accepts(s)),
        ("Description", s.get_description()),
        ("Dependents", ", ".join(d.name for d in s.iter_dependents()) or "-"),
        ("PID", proc.pid if proc else "-"),
    ]
    for label, value in fields:
        out.write(f"{label + ':':<14} {value}\n")


def cmd_control(directory, args, settings, out):
    s = directory.get_by_name(args.name)
    action = {"start": s.start, "stop": s.stop, "pause": s.pause, "continue": s.resume}[args.command]
    action(wait=args.wait)
    s.refresh_status()
    out.write(f"{s.name}: {s.get_state().label}\n")


def cmd_deps(directory, args, settings, out):
    s = directory.get_by_name(args.name)
    for d in s.iter_dependents():
        out.write(f"{d.name}\t{d.display_name}\n")


def cmd_install(directory, args, settings, out):
    service_type = SERVICE_TYPES[args.type]
    if args.interactive:
        service_type |= ServiceType.INTERACTIVE_PROCESS
    s = directory.install(
        args.name, args.display_name or args.name, service_type, START_TYPES[args.start],
        ERROR_CONTROLS[args.error_control], args.binary_path, args.group,
        dependencies=args.depends, run_as_user=args.user, password=args.password,
    )
    out.write(f"installed {s.name}\n")


def cmd_uninstall(directory, args, settings, out):
    if not directory.uninstall(args.name):
        out.write(f"could not remove {args.name}\n")
        return 1
    out.write(f"removed {args.name}\n")


def cmd_set(directory, args, settings, out):
    s = directory.get_by_name(args.name)
    if args.type:
        s.change_service_type(SERVICE_TYPES[args.type])
    if args.start:
        s.change_start_type(START_TYPES[args.start])
    if args.error_control:
        s.change_error_control(ERROR_CONTROLS[args.error_control])
    if args.binary_path:
        s.change_binary_path(args.binary_path)
    if args.display_name:
        s.change_display_name(args.display_name)
    if args.account:
        s.change_account_name(args.account, args.password)
    if args.description is not None:
        s.change_description(args.description)
    out.write(f"updated {s.name}\n")


def cmd_export(directory, args, settings, out):
    sort = args.sorted or settings.export.sort_by_display_name
    if args.format == "csv":
        text = directory.to_csv(sort, delimiter=settings.export.csv_delimiter)
    else:
        text = directory.to_xml(sort)
    if args.output:
        with open(args.output, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    else:
        out.write(text)


COMMANDS = {
    "list": cmd_list,
    "show": cmd_show,
    "start": cmd_control,
    "stop": cmd_control,
    "pause": cmd_control,
    "continue": cmd_control,
    "deps": cmd_deps,
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "set": cmd_set,
    "export": cmd_export,
}


def main(argv=None, subsystem=None, out=None):
    out = out or sys.stdout
    args = build_parser().parse_args(argv)
    settings = Settings.load(args.config)

    level = settings.logging.level
    if args.verbose:
        level = "DEBUG" if args.verbose > 1 else "INFO"
    setup_logging(level, settings.logging.log_file or None)

    if os.name != "nt" and subsystem is None:
        print("This tool is Windows-only.", file=sys.stderr)
        return 1
    if args.command in MUTATING and subsystem is None and not is_admin():
        logger.warning("Not running elevated; %s will probably be denied", args.command)

    directory = ServiceDirectory.from_settings(settings, subsystem=subsystem)
    if args.machine:
        directory.machine_name = args.machine
    if args.command == "set" and args.description is not None:
        directory.allow_locking = True

    try:
        with directory:
            return COMMANDS[args.command](directory, args, settings, out) or 0
    except ServiceManagerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
