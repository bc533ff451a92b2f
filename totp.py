#!/usr/bin/env python3
"""
TOTP - Simple TOTP CLI, powered by the system keyring
Usage:
    totp add <name>
    totp scan <name> <image> [--barcode]
    totp get <name> [--copy] [--verbose]
    totp list
    totp delete <name>
    totp temp
    totp completion {bash,zsh}
"""

import argparse
import logging
import os
import sys
import time
from getpass import getpass

import pyotp
import pyperclip

from totp_scan import import_image, resolve_name
from totp_store import (
    EntryManager, NameIndex, SecretStore, TotpError,
    get_index_path, get_service_name, normalize_secret,
)

__version__ = "1.1.3"

logger = logging.getLogger("totp")

COMMANDS = ["add", "scan", "get", "list", "delete", "temp", "completion"]


# ==================== Debug Logging ====================

def setup_logging(debug: bool):
    """Send records to stderr with milliseconds since start when debugging"""
    root = logging.getLogger("totp")
    for old in list(root.handlers):
        root.removeHandler(old)
    if not debug:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.NOTSET)
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(relativeCreated)7.1fms] %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)


def debug_log(message: str):
    logger.debug(message)


# ==================== Helpers ====================

def build_manager(args) -> EntryManager:
    """Wire the keyring adapter and name index from the global options"""
    index_path = args.index_file or get_index_path()
    service = args.service or get_service_name()
    debug_log(f"Index file: {index_path}, keyring service: {service}")
    return EntryManager(SecretStore(service), NameIndex(index_path))


def current_code(secret: str) -> str:
    return pyotp.TOTP(secret).now()


def ask_new_name(taken: str) -> str:
    """Prompt for a replacement when a name is already registered"""
    return input(f'Name "{taken}" already exists. Type new name: ')


def read_secret() -> str:
    return normalize_secret(getpass("Type secret: "))


# ==================== Commands ====================

def cmd_add(args):
    """Manually add a secret to the system keyring"""
    manager = build_manager(args)
    name = resolve_name(manager, args.name, ask_new_name)

    secret = read_secret()
    print(f"Current code: {current_code(secret)}")

    manager.add_entry(name, secret)
    print(f'Given secret successfully registered as "{name}".')


def cmd_scan(args):
    """Scan a QR code image and store it to the system keyring"""
    manager = build_manager(args)
    name = import_image(manager, args.name, args.image, ask_new_name, pure_barcode=args.barcode)
    print(f'Given QR code successfully registered as "{name}".')


def cmd_get(args):
    """Get a TOTP code from the system keyring"""
    manager = build_manager(args)
    totp = pyotp.TOTP(manager.get_entry(args.name))
    code = totp.now()

    clipboard_msg = ""
    if args.copy:
        try:
            pyperclip.copy(code)
            clipboard_msg = " (copied to clipboard)"
        except pyperclip.PyperclipException as e:
            print(f"Warning: could not copy to clipboard: {e}", file=sys.stderr)

    print(f"{code}{clipboard_msg}")

    if args.verbose:
        remaining = totp.interval - int(time.time()) % totp.interval
        print(f"Valid for {remaining}s")


def cmd_list(args):
    """List all registered TOTP codes"""
    for name in build_manager(args).list_entries():
        print(name)


def cmd_delete(args):
    """Delete a TOTP code"""
    build_manager(args).delete_entry(args.name)
    print(f'Successfully deleted "{args.name}".')


def cmd_temp(args):
    """Get a TOTP code from a secret without saving it to the keyring"""
    print(current_code(read_secret()))


# ==================== Shell Completion ====================

BASH_COMPLETION = r"""_totp_complete() {
    local cur=${COMP_WORDS[COMP_CWORD]}
    local cmd=${COMP_WORDS[1]}
    if [ "$COMP_CWORD" -eq 1 ]; then
        COMPREPLY=( $(compgen -W "%(commands)s" -- "$cur") )
    elif [ "$COMP_CWORD" -eq 2 ]; then
        COMPREPLY=( $(%(prog)s __complete "$cmd" "$cur" 2>/dev/null) )
    elif [ "$COMP_CWORD" -eq 3 ] && [ "$cmd" = "scan" ]; then
        COMPREPLY=( $(compgen -f -- "$cur") )
    fi
}
complete -F _totp_complete %(prog)s
"""

ZSH_COMPLETION = r"""#compdef %(prog)s
_totp() {
    if (( CURRENT == 2 )); then
        compadd %(commands)s
    elif (( CURRENT == 3 )); then
        compadd -- ${(f)"$(%(prog)s __complete ${words[2]} ${words[3]} 2>/dev/null)"}
    elif (( CURRENT == 4 )) && [[ ${words[2]} == scan ]]; then
        _files
    fi
}
compdef _totp %(prog)s
"""


def cmd_completion(args):
    """Print a shell completion script"""
    template = BASH_COMPLETION if args.shell == "bash" else ZSH_COMPLETION
    sys.stdout.write(template % {"prog": "totp", "commands": " ".join(COMMANDS)})


def cmd_complete(args):
    """Print completion candidates for the first argument of a command"""
    if args.target == "completion":
        candidates = ["bash", "zsh"]
    elif args.target in ("get", "delete"):
        try:
            candidates = build_manager(args).list_entries()
        except TotpError as e:
            debug_log(f"Completion listing failed: {e}")
            return
    else:
        return

    for name in candidates:
        if name.startswith(args.prefix):
            print(name)


# ==================== Main ====================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="totp",
        description="Simple TOTP CLI, powered by the system keyring",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true",
                        default=os.environ.get("TOTP_DEBUG", "").lower() in ("1", "true", "yes"),
                        help="Enable debug logging with timing")
    parser.add_argument("--index-file", help="Name index file (default: ~/.totp.json)")
    parser.add_argument("--service", help="Keyring service name (default: totp)")
    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Scan a QR code image")
    scan_parser.add_argument("name", help="Name to register the secret under")
    scan_parser.add_argument("image", help="Path to image file containing QR code")
    scan_parser.add_argument("--barcode", "-b", action="store_true",
                             help="Treat the image as a pure barcode; may help when no QR code is found")

    # Add command
    add_parser = subparsers.add_parser("add", help="Manually add a secret to the system keyring")
    add_parser.add_argument("name", help="Name to register the secret under")

    # List command
    subparsers.add_parser("list", help="List all registered TOTP codes")

    # Get command
    get_parser = subparsers.add_parser("get", help="Get a TOTP code")
    get_parser.add_argument("name", help="Registered name")
    get_parser.add_argument("--copy", "-c", action="store_true", help="Copy the code to the clipboard")
    get_parser.add_argument("--verbose", "-v", action="store_true", help="Show time remaining")

    # Delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a TOTP code")
    delete_parser.add_argument("name", help="Registered name")

    # Temp command
    subparsers.add_parser("temp", help="Get a TOTP code from a secret without saving it to the keyring")

    # Completion command
    completion_parser = subparsers.add_parser("completion", help="Print a shell completion script")
    completion_parser.add_argument("shell", choices=["bash", "zsh"])

    # Completion candidates, called by the completion scripts
    complete_parser = subparsers.add_parser("__complete")
    complete_parser.add_argument("target")
    complete_parser.add_argument("prefix", nargs="?", default="")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    debug_log(f"Command: {args.command}")

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "scan": cmd_scan,
        "add": cmd_add,
        "list": cmd_list,
        "get": cmd_get,
        "delete": cmd_delete,
        "temp": cmd_temp,
        "completion": cmd_completion,
        "__complete": cmd_complete,
    }

    try:
        commands[args.command](args)
    except TotpError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
