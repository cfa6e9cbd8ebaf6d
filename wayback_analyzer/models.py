from __future__ import annotations

from dataclasses import asdict, dataclass, field

from wayback_analyzer.config import Settings, settings


@dataclass(frozen=True)
class ArchivedUrlRecord:
    timestamp: str
    status: int
    url: str
    content_type: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["contentType"] = data.pop("content_type")
        return data


@dataclass(frozen=True)
class CollectorConfig:
    max_retries: int = 3
    page_size: int = 1000
    max_urls: int = 10000
    batch_size: int = 10
    batch_delay_ms: int = 500
    timeout_ms: int = 30000
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    empty_page_limit: int = 2
    max_response_bytes: int = 50 * 1024 * 1024
    verify_status: bool = False
    relays: tuple[str, ...] = field(default=("{url}",))

    @classmethod
    def from_settings(cls, s: Settings = settings) -> CollectorConfig:
        return cls(
            max_retries=s.max_retries,
            page_size=s.page_size,
            max_urls=s.max_urls,
            batch_size=s.batch_size,
            batch_delay_ms=s.batch_delay_ms,
            timeout_ms=s.timeout_ms,
            base_delay_ms=s.base_delay_ms,
            max_delay_ms=s.max_delay_ms,
            empty_page_limit=s.empty_page_limit,
            max_response_bytes=s.max_response_bytes,
            verify_status=s.verify_status,
            relays=tuple(s.relays) or ("{url}",),
        )
