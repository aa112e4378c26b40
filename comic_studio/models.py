"""
Records owned by the comic store.

Attribute names are snake_case; the persisted dict form uses the camelCase
keys of the stored state layout.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any


MAX_REFERENCE_IMAGES = 15


class ProjectStatus(str, Enum):
    """Project lifecycle status."""
    DRAFT = "draft"
    GENERATING = "generating"
    EDITING = "editing"
    COMPLETE = "complete"


@dataclass
class Character:
    """A recurring character that can be referenced from prompts."""

    id: str
    name: str
    token: str
    reference_images: List[str] = field(default_factory=list)
    trained: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "token": self.token,
            "referenceImages": list(self.reference_images),
            "trained": self.trained,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            token=data.get("token", ""),
            reference_images=list(data.get("referenceImages", [])),
            trained=bool(data.get("trained", False)),
        )


@dataclass
class Panel:
    """A single illustrated comic panel."""

    id: str
    image_url: str
    prompt: str
    scene_description: str
    camera_angle: str
    emotion: str
    dialogue: List[str] = field(default_factory=list)
    seed: int = 0
    is_generating: bool = False  # True only while a request is in flight

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "imageUrl": self.image_url,
            "prompt": self.prompt,
            "sceneDescription": self.scene_description,
            "cameraAngle": self.camera_angle,
            "emotion": self.emotion,
            "dialogue": list(self.dialogue),
            "seed": self.seed,
            "isGenerating": self.is_generating,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Panel":
        return cls(
            id=data["id"],
            image_url=data.get("imageUrl", ""),
            prompt=data.get("prompt", ""),
            scene_description=data.get("sceneDescription", ""),
            camera_angle=data.get("cameraAngle", ""),
            emotion=data.get("emotion", ""),
            dialogue=list(data.get("dialogue", [])),
            seed=int(data.get("seed", 0)),
            is_generating=bool(data.get("isGenerating", False)),
        )


@dataclass
class Project:
    """One comic authoring session: story, style choices and panels."""

    id: str
    title: str
    story: str
    tone: str
    style: str
    language: str
    characters: List[Character] = field(default_factory=list)
    panels: List[Panel] = field(default_factory=list)
    status: ProjectStatus = ProjectStatus.DRAFT
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def get_panel(self, panel_id: str):
        """Return the panel with the given id, or None."""
        for panel in self.panels:
            if panel.id == panel_id:
                return panel
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "story": self.story,
            "tone": self.tone,
            "style": self.style,
            "language": self.language,
            "characters": [c.to_dict() for c in self.characters],
            "panels": [p.to_dict() for p in self.panels],
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            story=data.get("story", ""),
            tone=data.get("tone", ""),
            style=data.get("style", ""),
            language=data.get("language", ""),
            characters=[Character.from_dict(c) for c in data.get("characters", [])],
            panels=[Panel.from_dict(p) for p in data.get("panels", [])],
            status=ProjectStatus(data.get("status", ProjectStatus.DRAFT.value)),
            created_at=int(data.get("createdAt", 0)),
        )
