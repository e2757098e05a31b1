"""
Data schemas for normalized comic listings.

Pydantic models giving source adapters a common item and pagination
shape. Unknown source fields are kept so that adapters can carry extra
metadata through the pipeline.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ComicItem(BaseModel):
    """
    Normalized comic listing.

    Only ``title`` is required; everything else depends on what the source
    exposes on the page that produced the item.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "title": "One Piece",
                "href": "/manga/one-piece",
                "thumbnail": "https://cdn.example.com/covers/one-piece.jpg",
                "type": "Manga",
                "chapter": "Chapter 1100",
                "rating": 9.1,
                "status": "Ongoing",
                "genre": ["Action", "Adventure"],
            }
        },
    )

    title: str = Field(..., description="Display title")
    href: Optional[str] = Field(None, description="Source-relative or absolute detail URL")
    thumbnail: Optional[str] = Field(None, description="Cover image URL")
    type: Optional[str] = Field(None, description="Manga, Manhwa, Manhua ...")
    chapter: Optional[str] = Field(None, description="Latest chapter label")
    rating: Optional[Union[float, str]] = Field(None, description="Source rating")
    status: Optional[str] = Field(None, description="Publication status")
    author: Optional[str] = Field(None, description="Author name(s)")
    genre: Optional[Union[list[str], str]] = Field(None, description="Genre list or comma-separated genres")
    description: Optional[str] = Field(None, description="Synopsis")
    released: Optional[str] = Field(None, description="Release year or date")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Strip surrounding whitespace and reject empty titles."""
        if not v or not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()

    @field_validator("chapter", mode="before")
    @classmethod
    def coerce_chapter(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    def genres(self) -> list[str]:
        """Genre names whether the source gave a list or a comma-separated string."""
        if isinstance(self.genre, list):
            return list(self.genre)
        if isinstance(self.genre, str):
            return [g.strip() for g in self.genre.split(",") if g.strip()]
        return []

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary without unset fields."""
        return self.model_dump(mode="json", exclude_none=True)

    def __repr__(self) -> str:
        return f"ComicItem(title={self.title!r}, href={self.href!r})"


class PaginatedResult(BaseModel):
    """Page of listings as returned by paginated source operations."""

    model_config = ConfigDict(extra="allow")

    current_page: int = Field(1, ge=1, description="Page number of this result")
    length_page: int = Field(1, ge=1, description="Total number of pages reported by the source")
    has_next: Optional[bool] = Field(None, description="More pages available")
    has_prev: Optional[bool] = Field(None, description="Earlier pages available")
    data: list[Union[ComicItem, dict[str, Any]]] = Field(default_factory=list, description="Page items")

    @model_validator(mode="after")
    def derive_navigation(self) -> "PaginatedResult":
        """Fill navigation flags from the page counters when the source omitted them."""
        if self.has_next is None:
            self.has_next = self.current_page < self.length_page
        if self.has_prev is None:
            self.has_prev = self.current_page > 1
        return self

    @property
    def is_last_page(self) -> bool:
        return not self.has_next or self.current_page >= self.length_page

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
