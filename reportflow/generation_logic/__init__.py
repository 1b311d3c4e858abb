"""Generation logic package.

This package groups the helpers that drive one report-generation request through
the orchestrator: start a tracker, run the operation under the retry executor,
and surface progress either as a plain awaitable or as an NDJSON stream.
Callers (an HTTP route handler, a background worker) only hand over the
operation; the lifecycle bookkeeping stays in this package.
"""

from .tracked_generation import run_tracked  # noqa: F401
from .tracked_generation import stream_tracked_generation  # noqa: F401
