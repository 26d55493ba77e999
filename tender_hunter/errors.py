"""
errors.py — Exception hierarchy.

Split by what the caller can do about it. Anything that should abort a run
(no content, nothing extracted, search credential missing) has its own
type so the orchestrator can tell "this product failed" apart from "this
whole run is pointless".
"""


class TenderHunterError(Exception):
    """Base class for every error raised by the package."""


class AnalysisError(TenderHunterError):
    """A run was aborted. The message is meant to be shown to the user."""


class ExtractionError(TenderHunterError):
    """The document could not be turned into products."""


class GenerationError(TenderHunterError):
    """The generative model failed after all retries."""


class SearchError(TenderHunterError):
    """A single search query failed."""


class SearchUnavailableError(SearchError):
    """Search is structurally disabled (no credential) for the whole run."""


class BidRecommendationError(TenderHunterError):
    pass


class ContractAnalysisError(TenderHunterError):
    pass


class DocumentError(TenderHunterError):
    """A document could not be read into text or an image payload."""
