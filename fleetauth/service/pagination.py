from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, List, Optional, Sequence, TypeVar
from urllib.parse import urlencode

from fleetauth.service.errors import ValidationError

T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    page: int
    per_page: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def limit(self) -> int:
        # one extra row tells us whether a further page exists
        return self.per_page + 1


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    per_page: int
    has_next: bool

    @property
    def next_page(self) -> Optional[int]:
        return self.page + 1 if self.has_next else None


def page_request(
    page: Optional[int],
    per_page: Optional[int],
    *,
    default_per_page: int,
    max_per_page: int,
) -> PageRequest:
    page = 1 if page is None else page
    per_page = default_per_page if per_page is None else per_page
    if page < 1:
        raise ValidationError("invalid page parameter", detail={"page": page})
    if per_page < 1:
        raise ValidationError("invalid per_page parameter", detail={"per_page": per_page})
    return PageRequest(page=page, per_page=min(per_page, max_per_page))


def paginate(request: PageRequest, fetched: Sequence[T]) -> Page[T]:
    return Page(
        items=list(fetched[: request.per_page]),
        page=request.page,
        per_page=request.per_page,
        has_next=len(fetched) > request.per_page,
    )


def link_header(path: str, page: Page, extra_params: Optional[dict] = None) -> str:
    """Build an RFC 5988 ``Link`` header with first, prev and next relations."""

    params = {k: v for k, v in (extra_params or {}).items() if v is not None}

    def _url(number: int) -> str:
        query = urlencode({**params, "page": number, "per_page": page.per_page})
        return f"{path}?{query}"

    links = [f'<{_url(1)}>; rel="first"']
    if page.page > 1:
        links.append(f'<{_url(page.page - 1)}>; rel="prev"')
    if page.has_next:
        links.append(f'<{_url(page.page + 1)}>; rel="next"')
    return ", ".join(links)
