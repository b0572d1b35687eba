from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

import pydantic

from pub_archive.ingest.models import ArticleRecord, AuthorRecord, RawPub
from pub_archive.ingest.prosemirror import extract_files, extract_text, word_count
from pub_archive.shared.cache import CollectionDirectory
from pub_archive.shared.clock import utc_now_iso
from pub_archive.shared.errors import ValidationError

ABSENT = object()
NOW = object()

# field -> default used when the remote value is missing, null or blank.
# NOW resolves to the normalizer clock; other callables build a fresh value.
FIELD_DEFAULTS: dict[str, Any] = {
    "title": "Untitled",
    "description": "",
    "doi": None,
    "license_slug": None,
    "avatar": None,
    "created_at": NOW,
    "attributions": list,
    "labels": list,
    "collection_pubs": list,
    "downloads": list,
}

# Ordered sources for derived fields; first present value wins, else None.
PUBLISHED_AT_SOURCES: tuple[str, ...] = ("custom_published_at", "created_at")
# Falls back to the capture time only when both are missing; see `updated_at_inferred`.
UPDATED_AT_SOURCES: tuple[str, ...] = ("updated_at", "created_at")
AUTHOR_NAME_SOURCES: tuple[str, ...] = ("name", "user.fullName")
AUTHOR_ORCID_SOURCES: tuple[str, ...] = ("orcid", "user.orcid")
AUTHOR_DEFAULT_NAME = "Unknown"

REQUIRED_FIELDS: tuple[str, ...] = ("id", "slug")
LIST_FIELDS: frozenset[str] = frozenset({"attributions", "labels", "collection_pubs", "downloads"})


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_text(value: Any) -> str | None:
    """Scalar text or number as a string; any other shape counts as missing."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_list(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def _lookup(source: Mapping[str, Any], dotted: str) -> Any:
    current: Any = source
    for part in dotted.split("."):
        if not isinstance(current, Mapping):
            return ABSENT
        current = current.get(part, ABSENT)
        if current is ABSENT:
            return ABSENT
    return current


def _first_present(source: Mapping[str, Any], paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = _lookup(source, path)
        if value is not ABSENT and not _is_blank(value):
            return value
    return None


def _attribution_order(attribution: Mapping[str, Any]) -> float:
    order = attribution.get("order")
    return float(order) if isinstance(order, (int, float)) else 0.0


def _normalize_author(attribution: Mapping[str, Any]) -> AuthorRecord:
    roles = attribution.get("roles")
    is_author = attribution.get("isAuthor")
    return AuthorRecord(
        name=_as_text(_first_present(attribution, AUTHOR_NAME_SOURCES)) or AUTHOR_DEFAULT_NAME,
        affiliation=_as_text(attribution.get("affiliation")) or None,
        orcid=_as_text(_first_present(attribution, AUTHOR_ORCID_SOURCES)),
        roles=[str(role) for role in roles] if isinstance(roles, list) else [],
        is_author=is_author if isinstance(is_author, bool) else None,
        is_corresponding=bool(attribution.get("isCorresponding") or False),
    )


def _download_url(downloads: list[Any]) -> str | None:
    for entry in downloads:
        url = entry.get("url") if isinstance(entry, Mapping) else None
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def _label_title(label: Any) -> str | None:
    if isinstance(label, str):
        return label.strip() or None
    if isinstance(label, Mapping):
        title = label.get("title")
        return str(title).strip() if not _is_blank(title) else None
    return None


class RecordNormalizer:
    """Maps raw publication objects onto ``ArticleRecord``.

    Optional fields never cause a failure; only a missing ``id`` or ``slug``
    is rejected with ``ValidationError``.
    """

    def __init__(
        self,
        *,
        site_base_url: str,
        collections: CollectionDirectory | None = None,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.site_base_url = site_base_url.rstrip("/")
        self.collections = collections
        self.now_fn = now_fn

    def _with_default(self, raw: RawPub, field: str) -> Any:
        value = getattr(raw, field)
        value = _as_list(value) if field in LIST_FIELDS else _as_text(value)
        if not _is_blank(value):
            return value
        default = FIELD_DEFAULTS[field]
        if default is NOW:
            return self.now_fn()
        return default() if callable(default) else default

    @staticmethod
    def _first_text(raw: RawPub, fields: tuple[str, ...]) -> str | None:
        for field in fields:
            value = _as_text(getattr(raw, field))
            if not _is_blank(value):
                return value
        return None

    def _parse(self, raw: RawPub | Mapping[str, Any]) -> RawPub:
        if isinstance(raw, RawPub):
            return raw
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Expected a mapping, got {type(raw).__name__}")
        try:
            return RawPub.model_validate(dict(raw))
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Malformed publication record: {exc.error_count()} field error(s)") from exc

    def _collection_titles(self, collection_pubs: list[Any]) -> list[str]:
        if self.collections is None:
            return []
        titles: list[str] = []
        for entry in collection_pubs:
            collection_id = entry.get("collectionId") if isinstance(entry, Mapping) else None
            if not collection_id:
                continue
            title = self.collections.title_for(str(collection_id))
            if title:
                titles.append(title)
        return titles

    def normalize(
        self,
        raw: RawPub | Mapping[str, Any],
        *,
        prosemirror_doc: Mapping[str, Any] | None = None,
    ) -> ArticleRecord:
        pub = self._parse(raw)
        for field in REQUIRED_FIELDS:
            if _is_blank(_as_text(getattr(pub, field))):
                raise ValidationError(f"Record is missing required field '{field}'", field=field)

        article_id = str(_as_text(pub.id)).strip()
        slug = str(_as_text(pub.slug)).strip()
        description = self._with_default(pub, "description")

        full_text = extract_text(prosemirror_doc) if prosemirror_doc else ""
        attachments = extract_files(prosemirror_doc) if prosemirror_doc else []

        attributions = [a for a in self._with_default(pub, "attributions") if isinstance(a, Mapping)]
        if any("order" in a for a in attributions):
            attributions = sorted(attributions, key=_attribution_order)
        authors = [_normalize_author(a) for a in attributions]

        keywords = [t for t in (_label_title(label) for label in self._with_default(pub, "labels")) if t]
        collections = self._collection_titles(self._with_default(pub, "collection_pubs"))

        created_at = self._with_default(pub, "created_at")
        updated_at = self._first_text(pub, UPDATED_AT_SOURCES)
        published_at = self._first_text(pub, PUBLISHED_AT_SOURCES)

        return ArticleRecord(
            article_id=article_id,
            slug=slug,
            title=str(self._with_default(pub, "title")).strip() or "Untitled",
            description=description,
            abstract=full_text or description,
            doi=self._with_default(pub, "doi"),
            license=self._with_default(pub, "license_slug"),
            avatar=self._with_default(pub, "avatar"),
            created_at=created_at,
            updated_at=updated_at or self.now_fn(),
            updated_at_inferred=updated_at is None,
            published_at=published_at,
            content_text=description,
            content_json=json.dumps(pub.model_dump(mode="json", by_alias=True), sort_keys=True),
            content_prosemirror=json.dumps(prosemirror_doc, sort_keys=True) if prosemirror_doc else None,
            content_text_full=full_text or None,
            word_count=word_count(full_text),
            authors_json=json.dumps([a.model_dump() for a in authors]),
            author_count=len(authors),
            collections_json=json.dumps(collections),
            collection_count=len(collections),
            keywords_json=json.dumps(keywords),
            attachments_json=json.dumps([a.model_dump() for a in attachments]),
            attachment_count=len(attachments),
            url=f"{self.site_base_url}/pub/{slug}",
            pdf_url=attachments[0].url if attachments else _download_url(self._with_default(pub, "downloads")),
        )
