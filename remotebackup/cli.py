"""
Command line entry points.

    remotebackup HOSTNAME [PORT]
    remotebackup-scheduler HOSTS_FILE
"""

import sys
import argparse

from remotebackup import configure_logging
from remotebackup.config import load_config
from remotebackup.backup.executor import execute_backup


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='remotebackup',
        description=(
            "Back up a remote host with rsync, keeping a rotating rollback of "
            "changed files (14 days, at least 10 runs) and an unlimited rollback "
            "of the paths listed in the host's incremental list."
        )
    )
    parser.add_argument('hostname', nargs='?', help="Host to back up")
    parser.add_argument('port', nargs='?', type=int, default=22, help="ssh port (default: 22)")
    parser.add_argument('--config', default=None, dest='config_name',
                        help="Configuration name (development, testing, production)")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.hostname:
        print(f"usage: {parser.prog} hostname <port>", file=sys.stderr)
        return 1

    settings = load_config(args.config_name)
    configure_logging(settings)

    result = execute_backup(args.hostname, args.port, settings=settings)
    if result.error:
        print(result.error, file=sys.stderr)
    return result.exit_code


def build_scheduler_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='remotebackup-scheduler',
        description="Run scheduled backups for every host in a JSON hosts file."
    )
    parser.add_argument('hosts_file', help="JSON file with a 'hosts' list")
    parser.add_argument('--config', default=None, dest='config_name',
                        help="Configuration name (development, testing, production)")
    return parser


def scheduler_main(argv=None) -> int:
    from remotebackup.scheduler import run_forever

    args = build_scheduler_parser().parse_args(argv)
    settings = load_config(args.config_name)
    configure_logging(settings)

    try:
        run_forever(settings, args.hosts_file)
    except (OSError, ValueError) as e:
        print(f"remotebackup-scheduler: error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
