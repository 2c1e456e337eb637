#!/usr/bin/env python3
"""
CLR Symbolicator - Command Line Entry Point

Inspect module debug information, demystify methods and symbolicate
captured stack traces.
"""

import argparse
import json
import sys
from typing import List, Optional

from .config import SymbolicateOptions
from .debug_meta import read_debug_meta
from .demystifier import Demystifier
from .errors import SymbolicationError
from .formatting import debug_meta_to_dict, from_json
from .reflection import AssemblyMetadataProvider
from .symbol_cache import safe_print
from .symbolicator import StackTraceSymbolicator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='clr-symbolicator',
        description='CLR Symbolicator - Resolve managed stack frames to source locations',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the symbol identity of a module
  %(prog)s debug-meta MyApp.dll

  # Symbolicate a captured trace with a local symbol store
  %(prog)s symbolicate trace.json --symbols-path ./symbols

  # Same, server side: never probe the path recorded in the module
  %(prog)s symbolicate trace.json --symbols-path /srv/symbols --no-original-path --format json -o out.json

  # Demystify a method by metadata token
  %(prog)s resolve MyApp.dll 0x06000012

Settings can also come from SYMBOLICATOR_* variables or a .env file.
        """
    )

    parser.add_argument(
        'command',
        choices=['debug-meta', 'symbolicate', 'resolve'],
        help='Command to execute'
    )

    parser.add_argument(
        'input_file',
        help='Module (.dll / .exe) or trace JSON file'
    )

    parser.add_argument(
        'token',
        nargs='?',
        help='Method metadata token for resolve (e.g. 0x06000001)'
    )

    parser.add_argument(
        '--symbols-path',
        help='Root folder of the symbol store'
    )

    parser.add_argument(
        '--no-original-path',
        action='store_true',
        help='Do not probe the PDB path recorded in the module'
    )

    parser.add_argument(
        '--symbol-server',
        help='HTTP symbol server to download missing PDBs from'
    )

    parser.add_argument(
        '--format',
        choices=['text', 'json'],
        default='text',
        help='Output format for symbolicate (default: text)'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Output file for results (default: console)'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Print symbol probing diagnostics'
    )
    return parser


def _emit(text: str, output: Optional[str]) -> None:
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(text)
        print(f"Results saved to: {output}")
    else:
        safe_print(text)


def _cmd_debug_meta(args) -> int:
    meta = read_debug_meta(args.input_file)
    if meta is None:
        print(f"[!] No debug information in {args.input_file}", file=sys.stderr)
        return 1
    _emit(json.dumps(debug_meta_to_dict(meta), indent=2), args.output)
    return 0


def _cmd_symbolicate(args) -> int:
    with open(args.input_file, 'r', encoding='utf-8') as f:
        info = from_json(f.read())

    options = SymbolicateOptions.from_env(
        symbols_path=args.symbols_path,
        attempt_original_symbol_path=False if args.no_original_path else None,
        symbol_server=args.symbol_server,
        verbose=args.verbose or None,
    )
    with StackTraceSymbolicator(options) as symbolicator:
        symbolicator.symbolicate(info)

    for error in info.errors:
        print(f"[!] {error}", file=sys.stderr)

    _emit(info.to_string('json' if args.format == 'json' else 'default'), args.output)
    return 0


def _cmd_resolve(args, parser: argparse.ArgumentParser) -> int:
    if not args.token:
        parser.error("resolve command requires a method token")
    try:
        token = int(args.token, 0)
    except ValueError:
        parser.error(f"invalid method token: {args.token}")

    provider = AssemblyMetadataProvider.from_file(args.input_file)
    method = provider.find_method(token)
    if method is None:
        print(f"[!] No method with token 0x{token:08X} in {args.input_file}", file=sys.stderr)
        return 1

    resolved = Demystifier(provider, verbose=args.verbose).resolve(method)
    _emit(str(resolved), args.output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == 'debug-meta':
            return _cmd_debug_meta(args)
        if args.command == 'symbolicate':
            return _cmd_symbolicate(args)
        return _cmd_resolve(args, parser)
    except SymbolicationError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 2
    except (OSError, ValueError) as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
