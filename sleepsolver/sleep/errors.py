"""Error taxonomy for the sync pipeline.

Provider errors abort only the pipeline step that raised them.  Persistence
errors roll back the unit of work they occurred in.  Missing baseline data is
not an error at all: it is stored as ``INSUFFICIENT_BASELINE_DATA``.
"""

from __future__ import annotations


class SleepSyncError(Exception):
    """Base class for every pipeline error."""


class ProviderError(SleepSyncError):
    """The sample provider failed to answer a request."""


class ProviderUnavailable(ProviderError):
    """The requested sample type is not supported on this platform."""


class AuthorizationDenied(ProviderError):
    """The user has not granted read access to the sample type."""


class ProviderTimeout(ProviderError):
    """A provider call did not complete within the configured timeout."""


class NoDataAvailable(ProviderError):
    """The provider has nothing for this query.

    Callers treat this as an empty result rather than a failure.
    """


class PersistenceFailure(SleepSyncError):
    """A store commit failed; pending changes were rolled back."""
