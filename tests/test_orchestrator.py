"""
Tests for panel generation orchestration.
"""

import base64
import random
from unittest.mock import MagicMock

import pytest

from comic_studio.credits import InsufficientCreditsError
from comic_studio.gemini_client import GeneratedImage, ProviderRequestError
from comic_studio.models import Panel, ProjectStatus
from comic_studio.orchestrator import (
    DEFAULT_TITLE,
    GenerationError,
    PanelBusyError,
    PanelOrchestrator,
    ProjectBusyError,
    panel_count_for,
    story_length,
)
from comic_studio.prompts import CAMERA_ANGLES, GENERATED_EMOTIONS
from comic_studio.storage import JsonFileBackend, MemoryBackend
from comic_studio.store import ComicStore, PanelNotFoundError, ProjectNotFoundError


STORY = (
    'Mia found a key. She said "look at this" and looked around. '
    "The door creaked open. A cat ran out! Everyone laughed."
)


def fake_image(prompt="p", data=b"image-bytes", seed=None):
    return GeneratedImage(image_data=data, mime_type="image/png", prompt=prompt, seed=seed)


@pytest.fixture
def provider():
    """Provider stub returning a small image for every prompt."""
    mock = MagicMock()
    mock.generate.side_effect = lambda prompt, options: fake_image(prompt, seed=options.seed)
    return mock


def make_store(credits=100):
    return ComicStore(MemoryBackend(), starting_credits=credits)


def make_project(store, story=STORY, style="manga", tone="funny"):
    return store.create_project(
        title="Key", story=story, tone=tone, style=style, language="English"
    )


def existing_panel(panel_id="p1", **overrides):
    fields = dict(
        id=panel_id,
        image_url="data:image/png;base64,b2xk",
        prompt="old prompt, wide shot of a door",
        scene_description="A door",
        camera_angle="wide shot",
        emotion="happy",
        dialogue=["hello"],
        seed=5,
    )
    fields.update(overrides)
    return Panel(**fields)


class TestPanelCount:
    """Test panel count from story length."""

    @pytest.mark.parametrize(
        "length,expected",
        [(0, 3), (99, 3), (100, 4), (250, 5), (299, 5), (300, 6), (5000, 6)],
    )
    def test_panel_count(self, length, expected):
        assert panel_count_for("x" * length) == expected

    def test_astral_characters_count_twice(self):
        """Test length is measured in UTF-16 code units."""
        assert story_length("a😀b") == 4
        assert panel_count_for("😀" * 50) == 4
        assert panel_count_for("é" * 100) == 4
        assert panel_count_for("日" * 99) == 3


class TestStartProject:
    """Test billed project creation."""

    def test_start_project_bills_structuring(self, provider):
        store = make_store(10)
        orchestrator = PanelOrchestrator(store, provider)

        project_id = orchestrator.start_project("", STORY, "funny", "western")

        project = store.get_project(project_id)
        assert project.title == DEFAULT_TITLE
        assert project.language == "English"
        assert store.current_project_id == project_id
        assert store.credits == 8

    def test_start_project_without_credits(self, provider):
        store = make_store(1)
        orchestrator = PanelOrchestrator(store, provider)

        with pytest.raises(InsufficientCreditsError):
            orchestrator.start_project("T", STORY, "funny", "western")
        assert store.list_projects() == []
        assert store.credits == 1

    def test_blank_story_rejected(self, provider):
        store = make_store()
        with pytest.raises(ValueError, match="Story"):
            PanelOrchestrator(store, provider).start_project("T", "   ", "funny", "western")
        assert store.credits == 100


class TestGeneratePanels:
    """Test batch generation."""

    def test_generates_billed_panels(self, provider):
        store = make_store(100)
        project_id = make_project(store)
        orchestrator = PanelOrchestrator(store, provider, rng=random.Random(1))

        report = orchestrator.generate_panels(project_id)

        project = store.get_project(project_id)
        assert report.requested == 4
        assert report.complete
        assert [p.id for p in project.panels] == report.panel_ids
        assert project.status == ProjectStatus.EDITING
        assert store.credits == 100 - 4 * 3
        assert provider.generate.call_count == 4

        for panel in project.panels:
            assert panel.camera_angle in CAMERA_ANGLES
            assert panel.emotion in GENERATED_EMOTIONS
            assert panel.prompt.startswith("Comic book panel illustration, ")
            assert panel.image_url.startswith("data:image/png;base64,")
            assert 0 <= panel.seed <= 999_999
            assert panel.is_generating is False

    def test_dialogue_extracted_from_scene(self, provider):
        store = make_store()
        project_id = make_project(store)
        PanelOrchestrator(store, provider).generate_panels(project_id)

        first = store.get_project(project_id).panels[0]
        assert first.dialogue == ["look at this"]

    def test_stops_when_credits_run_out(self, provider):
        """Test a short balance keeps earlier panels and stops cleanly."""
        store = make_store(7)
        project_id = make_project(store)

        report = PanelOrchestrator(store, provider).generate_panels(project_id)

        project = store.get_project(project_id)
        assert report.insufficient_credits is True
        assert report.created == 2
        assert len(project.panels) == 2
        assert project.status == ProjectStatus.EDITING
        assert store.credits == 1
        assert provider.generate.call_count == 2

    def test_zero_credits_creates_nothing(self, provider):
        store = make_store(0)
        project_id = make_project(store)

        report = PanelOrchestrator(store, provider).generate_panels(project_id)

        assert report.created == 0
        assert report.insufficient_credits is True
        assert provider.generate.call_count == 0
        assert store.get_project(project_id).status == ProjectStatus.EDITING

    def test_failed_request_is_recorded_and_batch_continues(self):
        provider = MagicMock()
        provider.generate.side_effect = [
            fake_image(),
            ProviderRequestError("boom"),
            fake_image(),
            fake_image(),
        ]
        store = make_store(100)
        project_id = make_project(store)

        report = PanelOrchestrator(store, provider).generate_panels(project_id)

        assert report.created == 3
        assert len(report.failures) == 1
        assert report.failures[0].index == 1
        assert "boom" in report.failures[0].error
        # The failed slot is still billed
        assert store.credits == 100 - 4 * 3
        assert store.get_project(project_id).status == ProjectStatus.EDITING

    def test_unknown_project(self, provider):
        with pytest.raises(ProjectNotFoundError):
            PanelOrchestrator(make_store(), provider).generate_panels("missing")

    def test_concurrent_batch_rejected(self):
        """Test a second batch on a busy project is refused without billing."""
        store = make_store(100)
        project_id = make_project(store)
        provider = MagicMock()
        orchestrator = PanelOrchestrator(store, provider)
        seen = {}

        def generate(prompt, options):
            if "error" not in seen:
                try:
                    orchestrator.generate_panels(project_id)
                except ProjectBusyError as e:
                    seen["error"] = e
                    seen["status"] = store.get_project(project_id).status
                    seen["credits"] = store.credits
            return fake_image()

        provider.generate.side_effect = generate
        orchestrator.generate_panels(project_id)

        assert isinstance(seen["error"], ProjectBusyError)
        assert seen["status"] == ProjectStatus.GENERATING
        assert seen["credits"] == 97
        assert store.credits == 88

    def test_seeded_rng_is_deterministic(self, provider):
        def run():
            store = make_store()
            project_id = make_project(store)
            PanelOrchestrator(store, provider, rng=random.Random(42)).generate_panels(project_id)
            return [
                (p.camera_angle, p.emotion, p.seed, p.prompt)
                for p in store.get_project(project_id).panels
            ]

        assert run() == run()

    def test_images_saved_to_directory(self, provider, tmp_path):
        store = make_store()
        project_id = make_project(store)

        PanelOrchestrator(store, provider, image_dir=tmp_path).generate_panels(project_id)

        for panel in store.get_project(project_id).panels:
            assert panel.image_url.startswith(str(tmp_path))
            assert panel.image_url.endswith(".png")
            assert (tmp_path / panel.image_url.rsplit("/", 1)[-1]).exists()


class TestRegeneratePanel:
    """Test single panel regeneration."""

    @pytest.fixture
    def store(self):
        store = make_store(10)
        project_id = make_project(store)
        store.add_panel(project_id, existing_panel())
        return store

    def test_regenerate_success(self, store, provider):
        project_id = store.current_project_id
        orchestrator = PanelOrchestrator(store, provider, rng=random.Random(3))

        panel = orchestrator.regenerate_panel(project_id, "p1")

        assert panel.image_url != "data:image/png;base64,b2xk"
        assert panel.is_generating is False
        assert panel.prompt == "old prompt, wide shot of a door"
        assert store.credits == 8
        assert provider.generate.call_args.args[0] == "old prompt, wide shot of a door"

    def test_regenerate_with_edited_prompt(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).regenerate_panel(
            project_id, "p1", prompt="a brand new prompt"
        )

        assert panel.prompt == "a brand new prompt"
        assert provider.generate.call_args.args[0] == "a brand new prompt"

    def test_regenerate_busy_panel(self, store, provider):
        project_id = store.current_project_id
        store.update_panel(project_id, "p1", is_generating=True)

        with pytest.raises(PanelBusyError):
            PanelOrchestrator(store, provider).regenerate_panel(project_id, "p1")
        assert store.credits == 10
        provider.generate.assert_not_called()

    def test_regenerate_without_credits(self, provider):
        store = make_store(1)
        project_id = make_project(store)
        store.add_panel(project_id, existing_panel())

        with pytest.raises(InsufficientCreditsError):
            PanelOrchestrator(store, provider).regenerate_panel(project_id, "p1")

        panel = store.get_panel(project_id, "p1")
        assert panel == existing_panel()
        assert store.credits == 1

    def test_provider_failure_keeps_previous_image(self, store):
        project_id = store.current_project_id
        provider = MagicMock()
        provider.generate.side_effect = ProviderRequestError("down")

        with pytest.raises(GenerationError, match="down"):
            PanelOrchestrator(store, provider).regenerate_panel(project_id, "p1")

        panel = store.get_panel(project_id, "p1")
        assert panel.image_url == "data:image/png;base64,b2xk"
        assert panel.seed == 5
        assert panel.is_generating is False
        # Debit is not refunded
        assert store.credits == 8

    def test_flag_set_while_in_flight(self, store):
        project_id = store.current_project_id
        seen = []

        def generate(prompt, options):
            seen.append(store.get_panel(project_id, "p1").is_generating)
            return fake_image()

        provider = MagicMock()
        provider.generate.side_effect = generate
        PanelOrchestrator(store, provider).regenerate_panel(project_id, "p1")

        assert seen == [True]

    def test_unknown_panel(self, store, provider):
        project_id = store.current_project_id
        with pytest.raises(PanelNotFoundError):
            PanelOrchestrator(store, provider).regenerate_panel(project_id, "nope")
        assert store.credits == 10


class TestAddPanel:
    """Test adding a single panel."""

    def test_add_panel(self, provider):
        store = make_store(10)
        project_id = make_project(store, style="noir", tone="dramatic")

        panel = PanelOrchestrator(store, provider).add_panel(project_id)

        assert panel.scene_description == "New scene"
        assert panel.camera_angle == "medium shot"
        assert panel.emotion == "neutral"
        assert panel.dialogue == []
        assert "New scene" in panel.prompt
        assert store.get_project(project_id).panels[-1].id == panel.id
        assert store.credits == 7

    def test_add_panel_without_credits(self, provider):
        store = make_store(2)
        project_id = make_project(store)

        with pytest.raises(InsufficientCreditsError):
            PanelOrchestrator(store, provider).add_panel(project_id)
        assert store.get_project(project_id).panels == []

    def test_add_panel_provider_failure(self):
        store = make_store(10)
        project_id = make_project(store)
        provider = MagicMock()
        provider.generate.side_effect = ProviderRequestError("down")

        with pytest.raises(GenerationError):
            PanelOrchestrator(store, provider).add_panel(project_id, "A chase")
        assert store.get_project(project_id).panels == []


class TestEditPanel:
    """Test free panel edits."""

    @pytest.fixture
    def store(self):
        store = make_store(10)
        project_id = make_project(store)
        store.add_panel(project_id, existing_panel())
        return store

    def test_edit_prompt_is_free(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).edit_panel(
            project_id, "p1", prompt="new prompt"
        )
        assert panel.prompt == "new prompt"
        assert store.credits == 10
        provider.generate.assert_not_called()

    def test_edit_dialogue_text(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).edit_panel(
            project_id, "p1", dialogue="Hi!\n\n  \nBye!"
        )
        assert panel.dialogue == ["Hi!", "Bye!"]

    def test_edit_dialogue_list(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).edit_panel(
            project_id, "p1", dialogue=["One", "", "Two"]
        )
        assert panel.dialogue == ["One", "Two"]

    def test_edit_camera_angle_rewrites_prompt(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).edit_panel(
            project_id, "p1", camera_angle="close-up"
        )
        assert panel.camera_angle == "close-up"
        assert panel.prompt == "old prompt, close-up of a door"

    def test_edit_expression(self, store, provider):
        project_id = store.current_project_id
        panel = PanelOrchestrator(store, provider).edit_panel(
            project_id, "p1", expression="Angry"
        )
        assert panel.prompt.endswith(", angry expression")
        assert panel.emotion == "happy"

    def test_edit_unknown_panel(self, store, provider):
        orchestrator = PanelOrchestrator(store, provider)
        with pytest.raises(PanelNotFoundError):
            orchestrator.edit_panel(store.current_project_id, "nope", prompt="x")
        with pytest.raises(ProjectNotFoundError):
            orchestrator.edit_panel("missing", "p1", prompt="x")


class TestExport:
    """Test billed export."""

    def test_export_bills_and_renders(self, provider, tmp_path):
        store = make_store(5)
        project_id = make_project(store)
        output_manager = MagicMock()
        output_manager.export_pdf.return_value = tmp_path / "comic.pdf"

        path = PanelOrchestrator(store, provider).export_pdf(project_id, output_manager)

        assert path == tmp_path / "comic.pdf"
        assert store.credits == 3
        exported = output_manager.export_pdf.call_args.args[0]
        assert exported.id == project_id

    def test_export_without_credits(self, provider):
        store = make_store(1)
        project_id = make_project(store)
        output_manager = MagicMock()

        with pytest.raises(InsufficientCreditsError):
            PanelOrchestrator(store, provider).export_pdf(project_id, output_manager)
        output_manager.export_pdf.assert_not_called()
        assert store.credits == 1


def test_data_uri_round_trips_image_bytes(provider):
    store = make_store()
    project_id = make_project(store)
    panel = PanelOrchestrator(store, provider).add_panel(project_id)

    encoded = panel.image_url.split(",", 1)[1]
    assert base64.b64decode(encoded) == b"image-bytes"


class TestSharedStateFile:
    """Test two commands, each with its own store, on one state file."""

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "state.json"

    def open_store(self, path):
        return ComicStore(JsonFileBackend(path), starting_credits=10)

    def test_second_regeneration_of_same_panel_rejected(self, path):
        first_store = self.open_store(path)
        project_id = make_project(first_store)
        first_store.add_panel(project_id, existing_panel())
        second_store = self.open_store(path)
        second_provider = MagicMock()
        seen = {}

        def generate(prompt, options):
            try:
                PanelOrchestrator(second_store, second_provider).regenerate_panel(
                    project_id, "p1"
                )
            except PanelBusyError as e:
                seen["error"] = e
            seen["credits"] = second_store.credits
            return fake_image()

        first_provider = MagicMock()
        first_provider.generate.side_effect = generate
        PanelOrchestrator(first_store, first_provider).regenerate_panel(project_id, "p1")

        assert isinstance(seen["error"], PanelBusyError)
        assert seen["credits"] == 8
        second_provider.generate.assert_not_called()
        assert first_provider.generate.call_count == 1
        assert self.open_store(path).get_panel(project_id, "p1").is_generating is False

    def test_second_batch_on_same_project_rejected(self, path):
        first_store = self.open_store(path)
        project_id = make_project(first_store, story="One. Two. Three.")
        second_store = self.open_store(path)
        seen = {}

        def generate(prompt, options):
            if "error" not in seen:
                try:
                    PanelOrchestrator(second_store, MagicMock()).generate_panels(project_id)
                except ProjectBusyError as e:
                    seen["error"] = e
            return fake_image()

        provider = MagicMock()
        provider.generate.side_effect = generate
        report = PanelOrchestrator(first_store, provider).generate_panels(project_id)

        assert isinstance(seen["error"], ProjectBusyError)
        assert report.created == 3
        assert self.open_store(path).credits == 10 - 9

    def test_top_up_during_batch_keeps_batch_debits(self, path):
        first_store = self.open_store(path)
        project_id = make_project(first_store, story="One. Two. Three.")
        second_store = self.open_store(path)
        topped_up = []

        def generate(prompt, options):
            if not topped_up:
                second_store.add_credits(5)
                topped_up.append(True)
            return fake_image()

        provider = MagicMock()
        provider.generate.side_effect = generate
        PanelOrchestrator(first_store, provider).generate_panels(project_id)

        assert self.open_store(path).credits == 10 - 9 + 5
