# donor_intel/errors.py


class DonorIntelError(RuntimeError):
    """Base class for errors surfaced by the donor intelligence engine."""


class ConfigurationError(DonorIntelError):
    """A required credential or connection setting is missing."""


class UpstreamError(DonorIntelError):
    """An external collaborator (embedding provider, store, LLM) failed."""


class EmbeddingError(UpstreamError):
    pass


class VectorLookupError(UpstreamError):
    pass


class StoreError(UpstreamError):
    pass


class LLMError(UpstreamError):
    pass
