"""
Panel generation orchestration.

PanelOrchestrator turns a project's story into billed panels: it segments the
story, composes a prompt per scene, asks the image provider for a picture and
records each result in the store. It also covers the billed single-panel
operations (regenerate, add, export) and free panel edits.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from comic_studio.credits import (
    EXPORT_COST,
    PANEL_COST,
    REGENERATE_COST,
    STORY_STRUCTURING_COST,
    InsufficientCreditsError,
)
from comic_studio.gemini_client import GeneratedImage, GenerationOptions
from comic_studio.models import Panel, ProjectStatus
from comic_studio.prompts import (
    CAMERA_ANGLES,
    GENERATED_EMOTIONS,
    add_expression,
    apply_camera_angle,
    compose_prompt,
)
from comic_studio.segmenter import extract_dialogue, segment_story
from comic_studio.store import ComicStore, PanelNotFoundError, ProjectNotFoundError


logger = logging.getLogger(__name__)


MAX_PANELS = 6
MIN_PANELS = 3
CHARS_PER_EXTRA_PANEL = 100
MAX_SEED = 999_999

DEFAULT_TITLE = "Untitled Comic"
NEW_SCENE = "New scene"


class GenerationError(Exception):
    """An image could not be produced for a panel."""
    pass


class ProjectBusyError(Exception):
    """A panel batch is already running for the project."""
    pass


class PanelBusyError(Exception):
    """The panel already has a generation request in flight."""
    pass


@dataclass
class PanelFailure:
    """A panel slot whose image request failed."""

    index: int
    scene_description: str
    error: str


@dataclass
class GenerationReport:
    """Outcome of a panel batch."""

    project_id: str
    requested: int
    panel_ids: List[str] = field(default_factory=list)
    failures: List[PanelFailure] = field(default_factory=list)
    insufficient_credits: bool = False

    @property
    def created(self) -> int:
        return len(self.panel_ids)

    @property
    def complete(self) -> bool:
        return self.created == self.requested


def story_length(story: str) -> int:
    """Length in UTF-16 code units; characters outside the BMP count twice."""
    return len(story.encode("utf-16-le")) // 2


def panel_count_for(story: str) -> int:
    """Three panels plus one per hundred characters, capped at six."""
    return min(MAX_PANELS, story_length(story) // CHARS_PER_EXTRA_PANEL + MIN_PANELS)


class PanelOrchestrator:
    """Drives billed panel generation against a store and image provider."""

    def __init__(
        self,
        store: ComicStore,
        provider,
        rng: Optional[random.Random] = None,
        image_dir: Optional[Path] = None,
        options: Optional[GenerationOptions] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Comic store holding projects and credits
            provider: Object with generate(prompt, options) -> GeneratedImage
            rng: Randomness source for camera, emotion and seed choices
            image_dir: If set, images are written here and referenced by
                path; otherwise panels carry data URIs
            options: Base generation options copied for every request
        """
        self.store = store
        self.provider = provider
        self.rng = rng or random.Random()
        self.image_dir = image_dir
        self.options = options or GenerationOptions()

    # ------------------------------------------------------------------
    # Helpers

    def _new_seed(self) -> int:
        return self.rng.randint(0, MAX_SEED)

    def _request_image(self, prompt: str, seed: int) -> GeneratedImage:
        options = GenerationOptions(
            aspect_ratio=self.options.aspect_ratio,
            seed=seed,
            reference_image=self.options.reference_image,
            mode=self.options.mode,
            strength=self.options.strength,
            temperature=self.options.temperature,
        )
        return self.provider.generate(prompt, options)

    def _image_reference(self, image: GeneratedImage, panel_id: str, seed: int) -> str:
        if self.image_dir is None:
            return image.to_data_uri()
        path = image.save(self.image_dir / f"{panel_id}_{seed}")
        return str(path)

    def _render_panel(
        self,
        prompt: str,
        scene_description: str,
        camera_angle: str,
        emotion: str,
        dialogue: List[str],
    ) -> Panel:
        panel_id = str(uuid.uuid4())
        seed = self._new_seed()
        image = self._request_image(prompt, seed)
        return Panel(
            id=panel_id,
            image_url=self._image_reference(image, panel_id, seed),
            prompt=prompt,
            scene_description=scene_description,
            camera_angle=camera_angle,
            emotion=emotion,
            dialogue=dialogue,
            seed=seed,
        )

    # ------------------------------------------------------------------
    # Projects

    def start_project(
        self,
        title: str,
        story: str,
        tone: str,
        style: str,
        language: str = "English",
    ) -> str:
        """
        Create a project, billing the story structuring step.

        Returns:
            Id of the new (current) project

        Raises:
            ValueError: If the story is blank
            InsufficientCreditsError: If structuring cannot be paid for
        """
        if not story.strip():
            raise ValueError("Story must not be empty")

        with self.store.transaction():
            if self.store.credits < STORY_STRUCTURING_COST:
                logger.info("Not enough credits to create a comic")
                raise InsufficientCreditsError(STORY_STRUCTURING_COST, self.store.credits)
            project_id = self.store.create_project(
                title=title or DEFAULT_TITLE,
                story=story,
                tone=tone,
                style=style,
                language=language,
            )
            self.store.use_credits(STORY_STRUCTURING_COST)
        return project_id

    # ------------------------------------------------------------------
    # Batch generation

    def generate_panels(self, project_id: str) -> GenerationReport:
        """
        Generate the panels for a project's story.

        Each panel is billed PANEL_COST before its image is requested. When
        the balance runs out the batch stops and keeps what it has. A failed
        image request is recorded and the batch moves on. The project ends in
        the editing state whatever happens.

        Raises:
            ProjectNotFoundError: If the project does not exist
            ProjectBusyError: If a batch is already running for it
        """
        with self.store.transaction():
            project = self.store.require_project(project_id)
            if project.status == ProjectStatus.GENERATING:
                raise ProjectBusyError(
                    f"Panels are already generating for {project_id} "
                    "(run 'recover' if that command was interrupted)"
                )
            self.store.update_project(project_id, status=ProjectStatus.GENERATING)

        count = panel_count_for(project.story)
        chunks = segment_story(project.story, count)
        report = GenerationReport(project_id=project_id, requested=count)
        logger.info(f"Generating {count} panels for project {project_id}")

        try:
            for i, chunk in enumerate(chunks):
                if not self.store.use_credits(PANEL_COST):
                    logger.info(
                        f"Stopped after {report.created} panel(s): not enough credits"
                    )
                    report.insufficient_credits = True
                    break

                prompt = compose_prompt(project.style, project.tone, chunk)
                try:
                    panel = self._render_panel(
                        prompt=prompt,
                        scene_description=chunk,
                        camera_angle=self.rng.choice(CAMERA_ANGLES),
                        emotion=self.rng.choice(GENERATED_EMOTIONS),
                        dialogue=extract_dialogue(chunk),
                    )
                except Exception as e:
                    logger.error(f"Panel {i + 1} of project {project_id} failed: {e}")
                    report.failures.append(
                        PanelFailure(index=i, scene_description=chunk, error=str(e))
                    )
                    continue

                self.store.add_panel(project_id, panel)
                report.panel_ids.append(panel.id)
                logger.info(f"Added panel {i + 1}/{count} to project {project_id}")
        finally:
            self.store.update_project(project_id, status=ProjectStatus.EDITING)

        return report

    # ------------------------------------------------------------------
    # Single panels

    def regenerate_panel(
        self,
        project_id: str,
        panel_id: str,
        prompt: Optional[str] = None,
    ) -> Panel:
        """
        Request a new image for an existing panel.

        Args:
            project_id: Owning project
            panel_id: Panel to regenerate
            prompt: Edited prompt to store and use instead of the current one

        Returns:
            The updated panel

        Raises:
            ProjectNotFoundError: If the project does not exist
            PanelNotFoundError: If the panel does not exist
            PanelBusyError: If the panel is already regenerating
            InsufficientCreditsError: If the regeneration cannot be paid for
            GenerationError: If the provider failed; the previous image is kept
        """
        with self.store.transaction():
            self.store.require_project(project_id)
            panel = self.store.get_panel(project_id, panel_id)
            if panel is None:
                raise PanelNotFoundError(panel_id)
            if panel.is_generating:
                raise PanelBusyError(
                    f"Panel {panel_id} is already generating "
                    "(run 'recover' if that command was interrupted)"
                )
            if not self.store.use_credits(REGENERATE_COST):
                raise InsufficientCreditsError(REGENERATE_COST, self.store.credits)

            updates = {"is_generating": True}
            if prompt is not None:
                updates["prompt"] = prompt
            self.store.update_panel(project_id, panel_id, **updates)

        effective_prompt = prompt if prompt is not None else panel.prompt
        seed = self._new_seed()

        try:
            image = self._request_image(effective_prompt, seed)
            image_url = self._image_reference(image, panel_id, seed)
        except Exception as e:
            logger.error(f"Regeneration of panel {panel_id} failed: {e}")
            self.store.update_panel(project_id, panel_id, is_generating=False)
            raise GenerationError(f"Failed to regenerate panel {panel_id}: {e}") from e

        self.store.update_panel(
            project_id, panel_id, image_url=image_url, seed=seed, is_generating=False
        )
        logger.info(f"Regenerated panel {panel_id} with seed {seed}")
        return self.store.get_panel(project_id, panel_id)

    def add_panel(self, project_id: str, scene_description: str = NEW_SCENE) -> Panel:
        """
        Append one billed panel for a free-form scene.

        Raises:
            ProjectNotFoundError: If the project does not exist
            InsufficientCreditsError: If the panel cannot be paid for
            GenerationError: If the provider failed
        """
        with self.store.transaction():
            project = self.store.require_project(project_id)
            if not self.store.use_credits(PANEL_COST):
                raise InsufficientCreditsError(PANEL_COST, self.store.credits)

        prompt = compose_prompt(project.style, project.tone, scene_description)
        try:
            panel = self._render_panel(
                prompt=prompt,
                scene_description=scene_description,
                camera_angle="medium shot",
                emotion="neutral",
                dialogue=[],
            )
        except Exception as e:
            logger.error(f"Adding a panel to project {project_id} failed: {e}")
            raise GenerationError(f"Failed to add panel: {e}") from e

        self.store.add_panel(project_id, panel)
        return panel

    def edit_panel(
        self,
        project_id: str,
        panel_id: str,
        prompt: Optional[str] = None,
        dialogue: Optional[Union[str, List[str]]] = None,
        camera_angle: Optional[str] = None,
        expression: Optional[str] = None,
    ) -> Panel:
        """
        Change a panel without regenerating it.

        Args:
            project_id: Owning project
            panel_id: Panel to edit
            prompt: Replacement prompt
            dialogue: Lines as a list or newline separated text; blank
                lines are dropped
            camera_angle: New camera tag; camera phrases in the prompt are
                rewritten to match
            expression: Expression hint appended to the prompt

        Returns:
            The updated panel
        """
        with self.store.transaction():
            panel = self.store.get_panel(project_id, panel_id)
            if panel is None:
                if self.store.get_project(project_id) is None:
                    raise ProjectNotFoundError(project_id)
                raise PanelNotFoundError(panel_id)

            updates = {}
            new_prompt = prompt if prompt is not None else panel.prompt
            if camera_angle is not None:
                new_prompt = apply_camera_angle(new_prompt, camera_angle)
                updates["camera_angle"] = camera_angle
            if expression is not None:
                new_prompt = add_expression(new_prompt, expression)
            if new_prompt != panel.prompt:
                updates["prompt"] = new_prompt
            if dialogue is not None:
                lines = dialogue.split("\n") if isinstance(dialogue, str) else dialogue
                updates["dialogue"] = [line for line in lines if line.strip()]
            if updates:
                self.store.update_panel(project_id, panel_id, **updates)
            return self.store.get_panel(project_id, panel_id)

    # ------------------------------------------------------------------
    # Export

    def export_pdf(self, project_id: str, output_manager, path: Optional[Path] = None) -> Path:
        """
        Bill and render a project as PDF.

        Raises:
            ProjectNotFoundError: If the project does not exist
            InsufficientCreditsError: If the export cannot be paid for
        """
        with self.store.transaction():
            project = self.store.require_project(project_id)
            if not self.store.use_credits(EXPORT_COST):
                logger.info("Not enough credits for PDF export")
                raise InsufficientCreditsError(EXPORT_COST, self.store.credits)
        return output_manager.export_pdf(project, path)
