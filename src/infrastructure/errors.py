"""Infrastructure-level exceptions."""


class StoreError(Exception):
    """The tree store could not complete an operation (network, timeout, DB).

    Transient: callers surface it as a failed result; no retry happens here.
    """


class InvalidPath(ValueError):
    """A store path is empty or contains a forbidden character."""
