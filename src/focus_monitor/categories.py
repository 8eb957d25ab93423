"""Category reference data shared by both storage backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


FALLBACK_CATEGORY = "Other"


@dataclass(frozen=True, slots=True)
class CategoryReference:
    """A named bucket that activation events are filed under."""

    id: str
    name: str
    is_default: bool = False
    color_hex: Optional[str] = None
    description: Optional[str] = None


DEFAULT_CATEGORIES: tuple[CategoryReference, ...] = (
    CategoryReference("productivity", "Productivity", True, "#4CAF50", "Work and productivity applications"),
    CategoryReference("communication", "Communication", True, "#2196F3", "Email, messaging, and communication tools"),
    CategoryReference("social_media", "Social Media", True, "#FF5722", "Social networking and media platforms"),
    CategoryReference("development", "Development", True, "#9C27B0", "Programming and development tools"),
    CategoryReference("entertainment", "Entertainment", True, "#FF9800", "Games, videos, and entertainment"),
    CategoryReference("design", "Design", True, "#E91E63", "Graphics, design, and creative tools"),
    CategoryReference("utilities", "Utilities", True, "#607D8B", "System utilities and tools"),
    CategoryReference("education", "Education", True, "#8BC34A", "Learning and educational resources"),
    CategoryReference("finance", "Finance", True, "#4CAF50", "Banking, finance, and money management"),
    CategoryReference("health_fitness", "Health & Fitness", True, "#F44336", "Health, fitness, and wellness apps"),
    CategoryReference("lifestyle", "Lifestyle", True, "#795548", "Lifestyle and personal apps"),
    CategoryReference("news", "News", True, "#3F51B5", "News and information sources"),
    CategoryReference("shopping", "Shopping", True, "#FF5722", "E-commerce and shopping apps"),
    CategoryReference("travel", "Travel", True, "#00BCD4", "Travel and navigation apps"),
    CategoryReference("knowledge_management", "Knowledge Management", True, "#9E9E9E", "Note-taking and knowledge tools"),
    CategoryReference("other", FALLBACK_CATEGORY, True, "#9E9E9E", "Uncategorized applications"),
)

_DEFAULT_NAMES = {category.name.casefold() for category in DEFAULT_CATEGORIES}


def is_default_category(name: str) -> bool:
    return name.strip().casefold() in _DEFAULT_NAMES


def normalize_category_name(value: Any) -> str:
    """Resolve a stored category value to a display name.

    Older documents stored the whole category object (``{"id": ..., "name": ...}``)
    rather than the bare name, so both shapes are accepted.
    """
    if isinstance(value, dict):
        value = value.get("name")
    if not isinstance(value, str):
        return FALLBACK_CATEGORY
    cleaned = value.strip()
    if not cleaned:
        return FALLBACK_CATEGORY
    for category in DEFAULT_CATEGORIES:
        if category.name.casefold() == cleaned.casefold():
            return category.name
    return cleaned


def category_id_for(name: str) -> str:
    """Stable identifier derived from a category name."""
    for category in DEFAULT_CATEGORIES:
        if category.name.casefold() == name.casefold():
            return category.id
    slug = "".join(ch if ch.isalnum() else "_" for ch in name.strip().casefold())
    return f"custom_{slug.strip('_') or 'unnamed'}"
