"""Exception types raised by fuzzdriver itself (as opposed to the fuzz target)."""


class FuzzDriverError(Exception):
    """Base class for harness-internal errors."""


class BindingError(FuzzDriverError):
    """The fuzz target could not be imported or has no usable entry point."""


class InitializationError(FuzzDriverError):
    """fuzzer_initialize raised; the original exception is chained as __cause__."""


class ReproducerError(FuzzDriverError):
    """A reproducer payload could not be serialized."""
