"""Exception hierarchy for the page cache, generation and session layers."""


class ReaderCacheError(Exception):
    """Base class for every error raised by this package."""


class GenerationError(ReaderCacheError):
    """An artifact generation did not produce a result."""


class GenerationTimeout(GenerationError):
    """The generator did not settle within the configured timeout."""


class CoordinatorClosed(ReaderCacheError):
    """The coordinator was closed with its document session."""


class TransientHTTPError(GenerationError):
    """Remote generator answered 429/5xx; safe to retry."""


class SessionError(ReaderCacheError):
    """Base class for reading-session lookups that cannot be served."""


class DocumentNotOpen(SessionError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"document {document_id!r} is not open")
        self.document_id = document_id


class PageOutOfRange(SessionError):
    def __init__(self, page: int, page_count: int) -> None:
        super().__init__(f"page {page} outside [0, {page_count})")
        self.page = page
        self.page_count = page_count


class UnknownArtifactKind(SessionError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown artifact kind {kind!r}")
        self.kind = kind
