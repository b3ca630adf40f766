"""
Loading a fuzz target module and binding its entry points.

A fuzz target is a Python module that defines ``fuzzer_test_one_input`` taking
a single argument, either the raw input bytes or a FuzzedDataProvider. It may
also define:

- ``fuzzer_initialize()`` or ``fuzzer_initialize(args)``, called once before
  fuzzing starts;
- ``fuzzer_tear_down()``, called once at shutdown;
- ``fuzzer_dump_reproducer(provider, path, sha1)``, which takes over
  reproducer generation for targets that record and replay their own input.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Sequence

from fuzzdriver.errors import BindingError, InitializationError
from fuzzdriver.findings import TEST_ONE_INPUT
from fuzzdriver.provider import FuzzedDataProvider

INITIALIZE = "fuzzer_initialize"
TEAR_DOWN = "fuzzer_tear_down"
DUMP_REPRODUCER = "fuzzer_dump_reproducer"


class InvocationMode(str, Enum):
    RAW_BYTES = "raw_bytes"
    PROVIDER = "provider"


@dataclass
class FuzzTarget:
    """A bound fuzz target. ``mode`` is fixed for the life of the process."""

    name: str
    module_file: str | None
    mode: InvocationMode
    test_one_input: Callable[[Any], Any]
    initialize: Callable[..., Any] | None = None
    tear_down: Callable[[], Any] | None = None
    dump_reproducer: Callable[..., Any] | None = None

    @property
    def uses_provider(self) -> bool:
        return self.mode is InvocationMode.PROVIDER


def load_target_module(spec: str) -> ModuleType:
    """Import a target given as a dotted module name or a path to a ``.py`` file."""
    if spec.endswith(".py") or "/" in spec or "\\" in spec:
        path = Path(spec).resolve()
        if not path.is_file():
            raise BindingError(f"fuzz target file not found: {spec}")
        module_name = path.stem
        module_spec = importlib.util.spec_from_file_location(module_name, path)
        if module_spec is None or module_spec.loader is None:
            raise BindingError(f"cannot load fuzz target from {spec}")
        module = importlib.util.module_from_spec(module_spec)
        # Targets commonly import sibling helper modules.
        sys.path.insert(0, str(path.parent))
        sys.modules[module_name] = module
        try:
            module_spec.loader.exec_module(module)
        except Exception as e:
            del sys.modules[module_name]
            raise BindingError(f"failed to import fuzz target {spec}: {e!r}") from e
        return module

    try:
        return importlib.import_module(spec)
    except Exception as e:
        raise BindingError(f"failed to import fuzz target {spec}: {e!r}") from e


def _is_provider_annotation(annotation: Any) -> bool:
    if isinstance(annotation, str):
        return annotation.rsplit(".", 1)[-1] == "FuzzedDataProvider"
    if inspect.isclass(annotation):
        return (
            issubclass(annotation, FuzzedDataProvider)
            or annotation.__name__ == "FuzzedDataProvider"
        )
    return False


def _binding_error(name: str) -> BindingError:
    return BindingError(
        f"{name} must define exactly one of the following two functions:\n"
        f"  def {TEST_ONE_INPUT}(data: bytes)\n"
        f"  def {TEST_ONE_INPUT}(provider: FuzzedDataProvider)\n"
        "Note: fuzz targets returning a boolean are not supported; raise an exception "
        "instead of returning True."
    )


def bind_target(module: ModuleType, name: str | None = None) -> FuzzTarget:
    """
    Resolve the entry points of *module* and decide the invocation mode.

    Raises:
        BindingError: If ``fuzzer_test_one_input`` is missing, not callable or
            does not take exactly one positional argument.
    """
    name = name or module.__name__
    entry = getattr(module, TEST_ONE_INPUT, None)
    if entry is None or not callable(entry):
        raise _binding_error(name)

    try:
        signature = inspect.signature(entry)
    except (TypeError, ValueError) as e:
        raise _binding_error(name) from e
    positional = [
        p
        for p in signature.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty
    ]
    if len(positional) != 1:
        raise _binding_error(name)

    if _is_provider_annotation(positional[0].annotation):
        mode = InvocationMode.PROVIDER
    else:
        mode = InvocationMode.RAW_BYTES

    def optional(attr: str) -> Callable[..., Any] | None:
        value = getattr(module, attr, None)
        return value if callable(value) else None

    return FuzzTarget(
        name=name,
        module_file=getattr(module, "__file__", None),
        mode=mode,
        test_one_input=entry,
        initialize=optional(INITIALIZE),
        tear_down=optional(TEAR_DOWN),
        dump_reproducer=optional(DUMP_REPRODUCER),
    )


def initialize_target(target: FuzzTarget, args: Sequence[str] = ()) -> None:
    """
    Call ``fuzzer_initialize``, passing *args* when it accepts a parameter.

    Raises:
        InitializationError: Wrapping whatever the initializer raised.
    """
    if target.initialize is None:
        return
    try:
        takes_args = len(inspect.signature(target.initialize).parameters) >= 1
    except (TypeError, ValueError):
        takes_args = False
    try:
        if takes_args:
            target.initialize(list(args))
        else:
            target.initialize()
    except Exception as e:
        raise InitializationError(f"{INITIALIZE} raised {type(e).__name__}") from e
