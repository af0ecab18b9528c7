"""Typed payloads describing canvas content and toolsets handed to the planner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping


@dataclass(slots=True)
class CanvasContentItem:
    """One item of canvas context (document, resource, prior answer, ...)."""

    id: str
    type: str
    title: str = ""
    content: str = ""
    content_preview: str = ""
    input_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CanvasContentItem":
        return cls(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            title=str(data.get("title") or ""),
            content=str(data.get("content") or ""),
            content_preview=str(data.get("content_preview") or data.get("contentPreview") or ""),
            input_ids=[str(item) for item in data.get("input_ids") or data.get("inputIds") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "content_preview": self.content_preview,
            "input_ids": list(self.input_ids),
        }


@dataclass(slots=True)
class ToolDescriptor:
    name: str
    description: str = ""


@dataclass(slots=True)
class Toolset:
    """A named group of tools the executing agent may call."""

    key: str
    name: str = ""
    description: str = ""
    tools: List[ToolDescriptor] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Toolset":
        tools = []
        for entry in data.get("tools") or []:
            if isinstance(entry, Mapping):
                tools.append(
                    ToolDescriptor(
                        name=str(entry.get("name") or ""),
                        description=str(entry.get("description") or ""),
                    )
                )
            else:
                tools.append(ToolDescriptor(name=str(entry)))
        key = str(data.get("key") or data.get("name") or "")
        return cls(
            key=key,
            name=str(data.get("name") or key),
            description=str(data.get("description") or ""),
            tools=tools,
        )


__all__ = ["CanvasContentItem", "ToolDescriptor", "Toolset"]
