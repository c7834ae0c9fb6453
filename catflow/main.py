#!/usr/bin/env python3
"""catflow/main.py — command-line entry point.

Usage examples
--------------
    # Optimise every function of a module and print the result
    catflow optimize prog.ll

    # Same, writing to a file, with the always-"yes" alias oracle
    catflow optimize prog.ll -o prog.opt.ll --conservative

    # Inputs using the CAT_new / CAT_get / ... runtime names
    catflow optimize prog.ll --cat-names

    # Show the facts the optimizer works from
    catflow optimize prog.ll --dump rda --dump points-to

    # Only parse and validate
    catflow check prog.ll

    # Graphviz rendering of a function's CFG
    catflow cfg prog.ll --function main | dot -Tsvg > main.svg

Exit codes
----------
    0   Success.
    1   The input parsed but is not valid IR (``check`` / ``optimize``).
    2   Infrastructure failure (unreadable file, syntax error, bad config).

The module doubles as ``python -m catflow`` via ``catflow/__main__.py``.
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence, TextIO

from . import __version__
from .config import OperationNames, PassOptions
from .engine import AnalysisContext
from .errors import CatflowError, ConfigError, IRValidationError
from .ir import Module, format_module
from .ir_parser import parse_module_file
from .oracle import conservative_factory, escape_factory
from .passes import CatPass
from .report import DUMP_KINDS, FORMATTERS

_log = logging.getLogger("catflow")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``catflow`` logger.

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
    root = logging.getLogger("catflow")
    root.setLevel(level)
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _load_options(args: argparse.Namespace) -> PassOptions:
    options = PassOptions.from_json(args.config) if args.config else PassOptions()
    if args.cat_names:
        options.names = OperationNames.cat_style()
    if getattr(args, "max_iterations", None) is not None:
        if args.max_iterations <= 0:
            raise ConfigError("--max-iterations must be positive")
        options.max_iterations = args.max_iterations
    return options


def _load_module(args: argparse.Namespace, options: PassOptions) -> Module:
    return parse_module_file(args.file, options)


# ===========================================================================
# Commands
# ===========================================================================

def cmd_optimize(args: argparse.Namespace) -> int:
    """Run the pass over every defined function and print the module."""
    options = _load_options(args)
    module = _load_module(args, options)
    dumps: List[str] = list(dict.fromkeys(args.dump or []))

    def dump(ctx: AnalysisContext) -> None:
        for kind in dumps:
            sys.stdout.write(FORMATTERS[kind](ctx))

    factory = conservative_factory if args.conservative else escape_factory(options)
    cat_pass = CatPass(factory, options, on_analyzed=dump if dumps else None)
    changed = cat_pass.run_on_module(module)
    _log.info("Module %s %s", module.name, "changed" if changed else "unchanged")

    out = _open_output(args.output)
    try:
        out.write(format_module(module))
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Parse and validate only."""
    options = _load_options(args)
    module = _load_module(args, options)
    print(
        f"{args.file}: ok ({len(module.functions)} function(s), "
        f"{len(module.globals)} global(s))"
    )
    return EXIT_OK


def cmd_cfg(args: argparse.Namespace) -> int:
    """Print the CFG of one function (or all) in Graphviz DOT syntax."""
    options = _load_options(args)
    module = _load_module(args, options)
    if args.function:
        fn = module.get_function(args.function)
        if fn is None:
            _log.error("no function @%s in %s", args.function, args.file)
            return EXIT_ERROR
        functions = [fn]
    else:
        functions = list(module)
    for fn in functions:
        print(fn.to_dot(title=f"@{fn.name}"))
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="catflow",
        description=(
            "catflow — dataflow analysis and constant folding for programs\n"
            "built on boxed-integer create/read/write/add/subtract/destroy\n"
            "operations."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              catflow optimize prog.ll -o prog.opt.ll
              catflow optimize prog.ll --cat-names --dump rda
              catflow check    prog.ll
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    def _add_input_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("file", metavar="FILE", help="Textual IR module.")
        p.add_argument(
            "--config",
            default=None,
            metavar="JSON",
            help="Pass options file (operation names, benign callees, ...).",
        )
        p.add_argument(
            "--cat-names",
            action="store_true",
            help="Recognise CAT_new/CAT_get/CAT_set/CAT_add/CAT_sub/CAT_destroy.",
        )

    # --- optimize ----------------------------------------------------------
    p_optimize = subparsers.add_parser(
        "optimize",
        help="Analyse and optimise a module.",
        description="Fold constants and propagate them through reads.",
    )
    _add_input_args(p_optimize)
    p_optimize.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    p_optimize.add_argument(
        "--conservative",
        action="store_true",
        help="Assume every opaque call may write every reachable location.",
    )
    p_optimize.add_argument(
        "--dump",
        action="append",
        choices=DUMP_KINDS,
        metavar="KIND",
        help=f"Print analysis facts before rewriting ({', '.join(DUMP_KINDS)}).",
    )
    g = p_optimize.add_argument_group("runtime tuning")
    g.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        metavar="N",
        help="Maximum block visits of the worklist.",
    )
    p_optimize.set_defaults(func=cmd_optimize)

    # --- check -------------------------------------------------------------
    p_check = subparsers.add_parser(
        "check",
        help="Parse and validate a module.",
    )
    _add_input_args(p_check)
    p_check.set_defaults(func=cmd_check)

    # --- cfg ---------------------------------------------------------------
    p_cfg = subparsers.add_parser(
        "cfg",
        help="Print control flow graphs as Graphviz DOT.",
    )
    _add_input_args(p_cfg)
    p_cfg.add_argument(
        "--function",
        default=None,
        metavar="NAME",
        help="Only this function (default: all).",
    )
    p_cfg.set_defaults(func=cmd_cfg)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the catflow CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except IRValidationError as exc:
        for problem in exc.problems:
            _log.error("%s", problem)
        return EXIT_ERROR
    except CatflowError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
