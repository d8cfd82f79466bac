"""Typed per-kind job configuration, validated at submit time."""

from __future__ import annotations

import soupsieve
from pydantic import BaseModel, Field, field_validator

from storekb.utils.urls import is_http_url, normalize_url

_MAX_RULES = 50


def _clean_list(values: list[str] | None) -> list[str]:
    if not values:
        return []
    cleaned = []
    for value in values:
        item = value.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    if len(cleaned) > _MAX_RULES:
        raise ValueError(f"at most {_MAX_RULES} entries are allowed")
    return cleaned


class WebJobConfig(BaseModel):
    """Crawl configuration for a single web source."""

    url: str
    follow_links: bool = False
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    include_selectors: list[str] = Field(default_factory=list)
    exclude_selectors: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not is_http_url(value):
            raise ValueError("url must be an absolute http(s) URL")
        return normalize_url(value)

    @field_validator("include_paths", "exclude_paths", mode="before")
    @classmethod
    def _clean_paths(cls, value: list[str] | None) -> list[str]:
        paths = _clean_list(value)
        for path in paths:
            if not path.startswith(("/", "*")):
                raise ValueError("path globs must start with '/' or '*'")
        return paths

    @field_validator("include_selectors", "exclude_selectors", mode="before")
    @classmethod
    def _clean_selectors(cls, value: list[str] | None) -> list[str]:
        selectors = _clean_list(value)
        for selector in selectors:
            try:
                soupsieve.compile(selector)
            except soupsieve.SelectorSyntaxError as exc:
                raise ValueError(f"invalid CSS selector: {selector!r}") from exc
        return selectors

    @property
    def source_ref(self) -> str:
        return self.url


class PdfJobConfig(BaseModel):
    """Stored upload for a PDF job."""

    filename: str
    sha256: str
    size_bytes: int = Field(gt=0)
    path: str

    model_config = {"extra": "ignore"}

    @property
    def source_ref(self) -> str:
        return f"pdf://{self.sha256}"


__all__ = ["WebJobConfig", "PdfJobConfig"]
