"""
cwecheck/__main__.py
====================

Command line driver.

Usage
-----
    python -m cwecheck PROGRAM.json [--elf BINARY] [--units U ...]
                       [--config FILE] [--jobs N] [--output FILE]
                       [--format json|text] [-v | -vv]
    python -m cwecheck --list-units

Exit codes
----------
    0   analysis finished without findings
    1   analysis finished with findings
    2   bad input: unreadable program, ELF file or config, unknown unit
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from typing import Optional, Sequence, TextIO

from cwecheck import __version__
from cwecheck.config import load_config
from cwecheck.elf_loader import read_elf_metadata
from cwecheck.errors import CweCheckError, InternalInvariantError
from cwecheck.loader import load_program_file
from cwecheck.pipeline import Pipeline, default_registry

EXIT_CLEAN = 0
EXIT_FINDINGS = 1
EXIT_INPUT = 2

_log = logging.getLogger("cwecheck")


def _configure_logging(verbosity: int) -> None:
    """Set up the ``cwecheck`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger("cwecheck")
    root.setLevel(level)
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cwecheck",
        description="Detect common weakness patterns in lifted binary code.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s a.out.json
              %(prog)s a.out.json --elf a.out --units CWE476 CWE676
              %(prog)s a.out.json --jobs 4 --output report.json
              %(prog)s --list-units
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("program", nargs="?", metavar="PROGRAM.json",
                        help="program document produced by the lifter")
    parser.add_argument("--elf", metavar="BINARY",
                        help="read sections, symbols and relocations from this ELF file")
    parser.add_argument("--units", nargs="+", metavar="UNIT",
                        help="run only these units (and their dependencies)")
    parser.add_argument("--list-units", action="store_true",
                        help="list the available analysis units and exit")
    parser.add_argument("--config", metavar="FILE",
                        help="JSON analysis configuration")
    parser.add_argument("--jobs", "-j", type=int, metavar="N",
                        help="analyse functions on N threads")
    parser.add_argument("--output", "-o", metavar="FILE",
                        help="write the report here instead of stdout")
    parser.add_argument("--format", choices=("json", "text"), default="json",
                        help="report format (default: json)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="-v for progress, -vv for debug output")
    return parser


def _list_units(out: TextIO) -> None:
    registry = default_registry()
    for name in registry.names:
        unit = registry.get(name)
        requires = ", ".join(unit.requires) or "-"
        out.write(f"{name:<14} {unit.scope.value:<9} {unit.description}  [requires: {requires}]\n")


def _write(text: str, dest: Optional[str]) -> None:
    if dest is None:
        sys.stdout.write(text)
        return
    with open(dest, "w", encoding="utf-8") as fh:
        fh.write(text)


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    program = load_program_file(args.program)
    if args.elf:
        program = read_elf_metadata(args.elf).apply_to(program)

    units = list(args.units) if args.units else None
    if units is not None and args.format == "json" and "SerdeJson" not in units:
        units.append("SerdeJson")
    result = Pipeline(config).run(program, units=units, jobs=args.jobs)

    report = result.report
    if args.format == "json":
        _write(result.serialized or report.to_json(), args.output)
    else:
        _write(report.to_text(), args.output)
    return EXIT_FINDINGS if report.findings else EXIT_CLEAN


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the cwecheck CLI.

    Returns
    -------
    int
        Exit code (see module docstring).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.list_units:
        _list_units(sys.stdout)
        return EXIT_CLEAN
    if args.program is None:
        parser.print_usage(sys.stderr)
        sys.stderr.write("cwecheck: error: PROGRAM.json is required\n")
        return EXIT_INPUT
    if args.jobs is not None and args.jobs < 1:
        sys.stderr.write("cwecheck: error: --jobs must be at least 1\n")
        return EXIT_INPUT

    try:
        return run(args)
    except InternalInvariantError:
        _log.exception("analysis aborted")
        raise
    except CweCheckError as exc:
        sys.stderr.write(f"cwecheck: error: {exc}\n")
        return EXIT_INPUT
    except OSError as exc:
        sys.stderr.write(f"cwecheck: error: {exc}\n")
        return EXIT_INPUT


if __name__ == "__main__":
    sys.exit(main())
