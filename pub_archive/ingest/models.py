from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RawPub(BaseModel):
    """Publication object as returned by the remote API.

    Every field is optional and loosely typed; the normalizer decides what a
    missing or wrong-typed value means.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Any = None
    slug: Any = None
    title: Any = None
    description: Any = None
    doi: Any = None
    avatar: Any = None
    created_at: Any = Field(default=None, alias="createdAt")
    updated_at: Any = Field(default=None, alias="updatedAt")
    custom_published_at: Any = Field(default=None, alias="customPublishedAt")
    license_slug: Any = Field(default=None, alias="licenseSlug")
    attributions: Any = None
    labels: Any = None
    collection_pubs: Any = Field(default=None, alias="collectionPubs")
    downloads: Any = None


class AuthorRecord(BaseModel):
    name: str = "Unknown"
    affiliation: str | None = None
    orcid: str | None = None
    roles: list[str] = Field(default_factory=list)
    is_author: bool | None = None
    is_corresponding: bool = False


class AttachmentRecord(BaseModel):
    url: str
    filename: str | None = None
    file_size: int | None = None
    type: str = "application/octet-stream"


class ArticleRecord(BaseModel):
    """Canonical article shape consumed by the version store."""

    article_id: str
    slug: str
    title: str = "Untitled"
    description: str = ""
    abstract: str = ""
    doi: str | None = None
    license: str | None = None
    avatar: str | None = None
    created_at: str
    updated_at: str
    # Set when no remote timestamp existed and `updated_at` is the capture time.
    updated_at_inferred: bool = Field(default=False, exclude=True)
    published_at: str | None = None
    content_text: str = ""
    content_json: str = "{}"
    content_prosemirror: str | None = None
    content_text_full: str | None = None
    word_count: int = 0
    authors_json: str = "[]"
    author_count: int = 0
    collections_json: str = "[]"
    collection_count: int = 0
    keywords_json: str = "[]"
    attachments_json: str = "[]"
    attachment_count: int = 0
    url: str | None = None
    pdf_url: str | None = None
