"""
Command-line entry point: ``python -m fuzzdriver <target> [inputs...] [libFuzzer flags]``.

With input files the target is run once on each of them (replay); without, the
target is fuzzed by libFuzzer through atheris.
"""

from __future__ import annotations

import sys
import traceback
from typing import Sequence

from fuzzdriver.binding import INITIALIZE, bind_target, initialize_target, load_target_module
from fuzzdriver.engine import AtherisEngine, ReplayEngine
from fuzzdriver.errors import BindingError, InitializationError
from fuzzdriver.options import parse_options
from fuzzdriver.runner import FuzzTargetRunner


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, bind and initialize the target, then hand control to the engine."""
    options = parse_options(argv)

    try:
        module = load_target_module(options.target)
        target = bind_target(module, module.__name__)
    except BindingError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        if e.__cause__ is not None:
            traceback.print_exception(e.__cause__, file=sys.stderr)
        return 1

    print(
        f"[+] Bound fuzz target {target.name} ({target.mode.value} mode)", file=sys.stderr
    )

    try:
        initialize_target(target, options.target_args)
    except InitializationError as e:
        print(f"== Python Exception in {INITIALIZE}: ", file=sys.stderr)
        traceback.print_exception(e.__cause__ or e, file=sys.stderr)
        return 1

    if options.inputs:
        engine = ReplayEngine(options.inputs, options.artifact_prefix)
    else:
        argv0 = sys.argv[0] if sys.argv else "fuzzdriver"
        engine = AtherisEngine([argv0, *options.engine_args], options.artifact_prefix)

    runner = FuzzTargetRunner(target, options, engine)
    runner.install()
    return engine.run(runner.run_one)


if __name__ == "__main__":
    sys.exit(main())
