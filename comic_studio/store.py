"""
Project/panel store.

ComicStore owns every Project, Panel and Character record together with the
credit balance. Reads hand out deep copies; all changes go through the
mutation methods, each of which builds a new record, swaps it in and persists
the whole state blob through the backend.

Several stores (one per CLI process) may share a backend. Every operation
runs inside transaction(), which holds the in-process lock and the backend's
lock and reloads the persisted state first, so a read-modify-write never
works from a stale copy.
"""

import copy
import dataclasses
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from comic_studio.credits import CreditLedger, DEFAULT_STARTING_CREDITS
from comic_studio.models import (
    MAX_REFERENCE_IMAGES,
    Character,
    Panel,
    Project,
    ProjectStatus,
)


logger = logging.getLogger(__name__)


STORAGE_NAMESPACE = "comic-studio-storage"
STATE_VERSION = 1

_PROJECT_FIELDS = {f.name for f in dataclasses.fields(Project)}
_PANEL_FIELDS = {f.name for f in dataclasses.fields(Panel)}
_CHARACTER_FIELDS = {f.name for f in dataclasses.fields(Character)}


class ProjectNotFoundError(KeyError):
    """No project with the requested id."""
    pass


class PanelNotFoundError(KeyError):
    """No panel with the requested id in the project."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _check_patch(updates: Dict[str, Any], allowed: set, kind: str) -> None:
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"Unknown {kind} field(s): {', '.join(sorted(unknown))}")


class ComicStore:
    """Repository of projects and credits backed by a persistence backend."""

    def __init__(
        self,
        backend,
        namespace: str = STORAGE_NAMESPACE,
        starting_credits: int = DEFAULT_STARTING_CREDITS,
    ):
        """
        Initialize the store and rehydrate persisted state.

        Args:
            backend: Object with lock(), load(key) and save(key, blob)
            namespace: Key the state blob lives under
            starting_credits: Balance used when nothing is persisted yet
        """
        self.backend = backend
        self.namespace = namespace
        self._lock = threading.RLock()
        self._depth = 0
        self._projects: List[Project] = []
        self._current_project_id: Optional[str] = None
        self.ledger = CreditLedger(starting_credits, lock=self._lock)

        with self.transaction():
            logger.info(
                f"Store ready: {len(self._projects)} project(s), "
                f"{self.ledger.credits} credits"
            )

    # ------------------------------------------------------------------
    # Persistence

    def _reload(self) -> None:
        """Replace in-memory state with the persisted blob, if there is one."""
        blob = self.backend.load(self.namespace)
        if blob is None:
            return

        state = blob.get("state", {})
        self.ledger = CreditLedger(int(state.get("credits", 0)), lock=self._lock)
        self._projects = [Project.from_dict(p) for p in state.get("projects", [])]
        self._current_project_id = state.get("currentProjectId")
        logger.debug(f"Reloaded state from '{self.namespace}'")

    def to_state(self) -> Dict[str, Any]:
        """Return the persisted state layout."""
        with self.transaction():
            return {
                "credits": self.ledger.credits,
                "projects": [p.to_dict() for p in self._projects],
                "currentProjectId": self._current_project_id,
            }

    def _persist(self) -> None:
        self.backend.save(
            self.namespace, {"state": self.to_state(), "version": STATE_VERSION}
        )

    @contextmanager
    def transaction(self) -> Iterator["ComicStore"]:
        """
        Hold the store and backend locks across a check-then-act sequence.

        The outermost entry reloads persisted state. Both locks are
        re-entrant, so store methods may be called inside.
        """
        with self._lock, self.backend.lock():
            self._depth += 1
            try:
                if self._depth == 1:
                    self._reload()
                yield self
            finally:
                self._depth -= 1

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """
        Apply a change and persist it, or leave no trace of it.

        Records are replaced rather than edited in place, so a shallow copy
        of the project list is enough to restore from.
        """
        with self.transaction():
            projects = list(self._projects)
            credits = self.ledger.credits
            current = self._current_project_id
            try:
                yield
                self._persist()
            except Exception:
                self._projects = projects
                self.ledger = CreditLedger(credits, lock=self._lock)
                self._current_project_id = current
                raise

    # ------------------------------------------------------------------
    # Credits

    @property
    def credits(self) -> int:
        with self.transaction():
            return self.ledger.credits

    def add_credits(self, amount: int) -> int:
        with self._mutation():
            balance = self.ledger.add_credits(amount)
        return balance

    def use_credits(self, amount: int) -> bool:
        with self._mutation():
            ok = self.ledger.use_credits(amount)
        return ok

    # ------------------------------------------------------------------
    # Recovery

    def recover(self) -> int:
        """
        Clear in-flight markers left behind by an interrupted command.

        Panels still flagged as generating are released and projects stuck
        in the generating state return to editing. Only call this when no
        other command is running against the same state.

        Returns:
            Number of panels and projects released
        """
        released = 0
        with self._mutation():
            for index, project in enumerate(self._projects):
                stuck = [p for p in project.panels if p.is_generating]
                if not stuck and project.status != ProjectStatus.GENERATING:
                    continue
                released += len(stuck)
                panels = [
                    dataclasses.replace(p, is_generating=False) for p in project.panels
                ]
                status = project.status
                if status == ProjectStatus.GENERATING:
                    status = ProjectStatus.EDITING
                    released += 1
                self._projects[index] = dataclasses.replace(
                    project, panels=panels, status=status
                )
        if released:
            logger.warning(f"Released {released} stale in-flight marker(s)")
        return released

    # ------------------------------------------------------------------
    # Projects

    def _index_of(self, project_id: str) -> Optional[int]:
        for i, project in enumerate(self._projects):
            if project.id == project_id:
                return i
        return None

    def list_projects(self) -> List[Project]:
        with self.transaction():
            return copy.deepcopy(self._projects)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.transaction():
            index = self._index_of(project_id)
            if index is None:
                return None
            return copy.deepcopy(self._projects[index])

    def require_project(self, project_id: str) -> Project:
        """Like get_project but raises ProjectNotFoundError."""
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def create_project(
        self,
        title: str,
        story: str,
        tone: str,
        style: str,
        language: str,
    ) -> str:
        """Create a draft project, make it current and return its id."""
        project = Project(
            id=_new_id(),
            title=title,
            story=story,
            tone=tone,
            style=style,
            language=language,
        )
        with self._mutation():
            self._projects.append(project)
            self._current_project_id = project.id
        logger.info(f"Created project {project.id} ({title!r})")
        return project.id

    def update_project(self, project_id: str, **updates: Any) -> None:
        """
        Merge updates into a project. Unknown project ids are ignored.

        Raises:
            ValueError: If updates names a field Project does not have
        """
        _check_patch(updates, _PROJECT_FIELDS - {"id"}, "project")
        if "status" in updates:
            updates["status"] = ProjectStatus(updates["status"])
        with self.transaction():
            index = self._index_of(project_id)
            if index is None:
                return
            with self._mutation():
                self._projects[index] = dataclasses.replace(
                    self._projects[index], **copy.deepcopy(updates)
                )

    def delete_project(self, project_id: str) -> None:
        with self._mutation():
            self._projects = [p for p in self._projects if p.id != project_id]
            if self._current_project_id == project_id:
                self._current_project_id = None

    @property
    def current_project_id(self) -> Optional[str]:
        with self.transaction():
            return self._current_project_id

    def set_current_project(self, project_id: Optional[str]) -> None:
        with self._mutation():
            self._current_project_id = project_id

    def get_current_project(self) -> Optional[Project]:
        with self.transaction():
            if self._current_project_id is None:
                return None
            return self.get_project(self._current_project_id)

    # ------------------------------------------------------------------
    # Panels

    def _update_panels(self, project_id: str, build) -> None:
        """Swap in a project whose panel list is build(old_panels)."""
        with self.transaction():
            index = self._index_of(project_id)
            if index is None:
                return
            with self._mutation():
                project = self._projects[index]
                self._projects[index] = dataclasses.replace(
                    project, panels=build(project.panels)
                )

    def get_panel(self, project_id: str, panel_id: str) -> Optional[Panel]:
        with self.transaction():
            index = self._index_of(project_id)
            if index is None:
                return None
            panel = self._projects[index].get_panel(panel_id)
            return copy.deepcopy(panel) if panel is not None else None

    def add_panel(self, project_id: str, panel: Panel) -> None:
        panel = copy.deepcopy(panel)
        self._update_panels(project_id, lambda panels: panels + [panel])

    def update_panel(self, project_id: str, panel_id: str, **updates: Any) -> None:
        """
        Merge updates into one panel. Unknown ids are ignored.

        Raises:
            ValueError: If updates names a field Panel does not have
        """
        _check_patch(updates, _PANEL_FIELDS - {"id"}, "panel")
        updates = copy.deepcopy(updates)

        def build(panels):
            return [
                dataclasses.replace(p, **updates) if p.id == panel_id else p
                for p in panels
            ]

        self._update_panels(project_id, build)

    def delete_panel(self, project_id: str, panel_id: str) -> None:
        self._update_panels(
            project_id, lambda panels: [p for p in panels if p.id != panel_id]
        )

    def reorder_panels(self, project_id: str, panel_ids: List[str]) -> None:
        """
        Re-sequence a project's panels to panel_ids.

        Panels whose id is not listed are dropped; listed ids that do not
        exist are ignored. Pass the complete id set to keep every panel.
        """
        def build(panels):
            by_id = {p.id: p for p in panels}
            dropped = len(panels) - len({i for i in panel_ids if i in by_id})
            if dropped > 0:
                logger.info(f"Reorder of project {project_id} dropped {dropped} panel(s)")
            return [by_id[i] for i in panel_ids if i in by_id]

        self._update_panels(project_id, build)

    # ------------------------------------------------------------------
    # Characters

    def _update_characters(self, project_id: str, build) -> None:
        with self.transaction():
            index = self._index_of(project_id)
            if index is None:
                return
            with self._mutation():
                project = self._projects[index]
                self._projects[index] = dataclasses.replace(
                    project, characters=build(project.characters)
                )

    def add_character(self, project_id: str, character: Character) -> None:
        if len(character.reference_images) > MAX_REFERENCE_IMAGES:
            raise ValueError(
                f"A character holds at most {MAX_REFERENCE_IMAGES} reference images"
            )
        character = copy.deepcopy(character)
        self._update_characters(project_id, lambda chars: chars + [character])

    def update_character(
        self, project_id: str, character_id: str, **updates: Any
    ) -> None:
        _check_patch(updates, _CHARACTER_FIELDS - {"id"}, "character")
        images = updates.get("reference_images")
        if images is not None and len(images) > MAX_REFERENCE_IMAGES:
            raise ValueError(
                f"A character holds at most {MAX_REFERENCE_IMAGES} reference images"
            )
        updates = copy.deepcopy(updates)

        def build(chars):
            return [
                dataclasses.replace(c, **updates) if c.id == character_id else c
                for c in chars
            ]

        self._update_characters(project_id, build)
