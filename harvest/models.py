"""Pydantic models shared across harvest components."""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class ProductFields(BaseModel):
    handle: str
    title: str
    sku: Optional[str] = None
    number: Optional[str] = None  # best effort, see extractor
    brand: Optional[str] = None
    series: Optional[List[str]] = None
    category: Optional[List[str]] = None
    release_date: Optional[str] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    image_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    def snapshot(self, source_url: str, parsed_at: str) -> dict:
        """Small audit record stored with the catalog row (never the page)."""
        return {
            "url": source_url,
            "parsed_at": parsed_at,
            "snapshot": {
                "handle": self.handle,
                "title": self.title,
                "number": self.number,
                "image_count": len(self.images),
            },
        }


class ImageRow(BaseModel):
    handle: str
    url: str
    position: int
    mirror_id: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
