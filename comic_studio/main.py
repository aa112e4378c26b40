"""
Main application for Comic Studio.

This module provides the CLI interface: creating projects from story text,
generating and editing panels, and exporting finished comics.
"""

import argparse
import logging
import random
import sys
from pathlib import Path
from typing import List, Optional

from comic_studio.config import Config, ConfigError, load_config, validate_config
from comic_studio.credits import InsufficientCreditsError
from comic_studio.gemini_client import GeminiImageProvider, GenerationOptions
from comic_studio.orchestrator import (
    GenerationError,
    PanelBusyError,
    PanelOrchestrator,
    ProjectBusyError,
)
from comic_studio.output_manager import OutputManager
from comic_studio.prompts import CAMERA_ANGLES, EMOTIONS, STYLES, TONES
from comic_studio.storage import JsonFileBackend, StorageError
from comic_studio.store import ComicStore, PanelNotFoundError, ProjectNotFoundError


# Configure logging
def setup_logging(verbose: bool = False):
    """
    Configure logging for the application.

    Args:
        verbose: Enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("comic_studio.log"),
        ],
    )

    # Reduce noise from external libraries
    for name in ("urllib3", "httpx", "google", "PIL", "fpdf"):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_store(config: Config) -> ComicStore:
    return ComicStore(
        JsonFileBackend(config.state_file),
        starting_credits=config.starting_credits,
    )


def build_orchestrator(
    config: Config,
    store: ComicStore,
    with_provider: bool = False,
) -> PanelOrchestrator:
    """
    Wire an orchestrator for a command.

    The Gemini provider is only created for commands that generate images,
    so a missing API key fails those before any credits move.
    """
    provider = GeminiImageProvider(config) if with_provider else None
    rng = random.Random(config.seed) if config.seed is not None else random.Random()
    return PanelOrchestrator(
        store,
        provider,
        rng=rng,
        image_dir=config.image_dir,
        options=GenerationOptions(aspect_ratio=config.aspect_ratio),
    )


def resolve_project_id(store: ComicStore, project_id: Optional[str]) -> str:
    project_id = project_id or store.current_project_id
    if not project_id:
        raise ProjectNotFoundError("no project given and no current project")
    return project_id


# ----------------------------------------------------------------------
# Commands


def cmd_create(args, config: Config, store: ComicStore) -> int:
    story = args.story
    if args.story_file:
        story = args.story_file.read_text(encoding="utf-8")
    orchestrator = build_orchestrator(config, store)
    project_id = orchestrator.start_project(
        title=args.title,
        story=story or "",
        tone=args.tone,
        style=args.style,
        language=args.language,
    )
    print(f"Created project {project_id} ({store.credits} credits left)")
    return 0


def cmd_list(args, config: Config, store: ComicStore) -> int:
    projects = store.list_projects()
    if not projects:
        print("No projects yet")
        return 0
    for project in projects:
        marker = "*" if project.id == store.current_project_id else " "
        print(
            f"{marker} {project.id}  {project.title}  "
            f"[{project.status.value}] {len(project.panels)} panel(s)"
        )
    return 0


def cmd_show(args, config: Config, store: ComicStore) -> int:
    project = store.require_project(resolve_project_id(store, args.project))
    print(f"{project.title} ({project.style}, {project.tone}, {project.language})")
    print(f"Status: {project.status.value}")
    for index, panel in enumerate(project.panels, start=1):
        flag = " (generating)" if panel.is_generating else ""
        print(f"\nPanel {index}: {panel.id}{flag}")
        print(f"  Scene: {panel.scene_description}")
        print(f"  Camera: {panel.camera_angle}  Emotion: {panel.emotion}  Seed: {panel.seed}")
        for line in panel.dialogue:
            print(f'  "{line}"')
    return 0


def cmd_use(args, config: Config, store: ComicStore) -> int:
    store.require_project(args.project_id)
    store.set_current_project(args.project_id)
    print(f"Current project: {args.project_id}")
    return 0


def cmd_generate(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    orchestrator = build_orchestrator(config, store, with_provider=True)
    report = orchestrator.generate_panels(project_id)

    print(f"Generated {report.created} of {report.requested} panel(s)")
    for failure in report.failures:
        print(f"  Panel {failure.index + 1} failed: {failure.error}")
    if report.insufficient_credits:
        print("Not enough credits to generate more panels!")
    print(f"{store.credits} credits left")
    return 0 if not report.failures else 1


def cmd_regenerate(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    orchestrator = build_orchestrator(config, store, with_provider=True)
    panel = orchestrator.regenerate_panel(project_id, args.panel_id, prompt=args.prompt)
    print(f"Regenerated panel {panel.id} (seed {panel.seed})")
    return 0


def cmd_add_panel(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    orchestrator = build_orchestrator(config, store, with_provider=True)
    panel = orchestrator.add_panel(project_id, args.scene)
    print(f"Added panel {panel.id}")
    return 0


def cmd_edit(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    orchestrator = build_orchestrator(config, store)
    panel = orchestrator.edit_panel(
        project_id,
        args.panel_id,
        prompt=args.prompt,
        dialogue=args.dialogue,
        camera_angle=args.camera,
        expression=args.expression,
    )
    print(f"Updated panel {panel.id}")
    return 0


def cmd_reorder(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    store.require_project(project_id)
    store.reorder_panels(project_id, args.panel_ids)
    print(f"Reordered panels of {project_id}")
    return 0


def cmd_delete_panel(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    store.delete_panel(project_id, args.panel_id)
    print(f"Deleted panel {args.panel_id}")
    return 0


def cmd_delete(args, config: Config, store: ComicStore) -> int:
    store.delete_project(args.project_id)
    print(f"Deleted project {args.project_id}")
    return 0


def cmd_export(args, config: Config, store: ComicStore) -> int:
    project_id = resolve_project_id(store, args.project)
    orchestrator = build_orchestrator(config, store)
    output_manager = OutputManager(config)
    pdf_path = orchestrator.export_pdf(project_id, output_manager, args.output)
    if args.metadata:
        output_manager.save_metadata(store.require_project(project_id))
    print(f"Exported PDF: {pdf_path}")
    return 0


def cmd_credits(args, config: Config, store: ComicStore) -> int:
    if args.add:
        store.add_credits(args.add)
    print(f"{store.credits} credits")
    return 0


def cmd_recover(args, config: Config, store: ComicStore) -> int:
    released = store.recover()
    print(f"Released {released} stale in-flight marker(s)")
    return 0


def cmd_check(args, config: Config, store: ComicStore) -> int:
    provider = GeminiImageProvider(config)
    if not provider.test_connection():
        print(f"Could not reach Gemini model {config.image_model}")
        return 1
    print(f"Gemini model {config.image_model} is reachable")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """
    Create command-line argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description="Turn story text into illustrated comic panels",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start a project from a story file and generate its panels
  comic-studio create --title "Lost Key" --story-file story.txt --tone funny
  comic-studio generate

  # Rewrite a panel's camera angle and regenerate it
  comic-studio edit PANEL_ID --camera close-up
  comic-studio regenerate PANEL_ID

  # Export the current project
  comic-studio export --output comic.pdf
        """,
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--config-file",
        type=Path,
        help="Path to .env configuration file",
    )

    parser.add_argument(
        "--state-file",
        type=Path,
        help="Path to the project state file",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a project (2 credits)")
    create.add_argument("--title", default="", help="Comic title")
    story = create.add_mutually_exclusive_group(required=True)
    story.add_argument("--story", help="Story text")
    story.add_argument("--story-file", type=Path, help="File holding the story text")
    create.add_argument("--tone", choices=TONES, default="funny")
    create.add_argument("--style", choices=STYLES, default="western")
    create.add_argument("--language", default="English")
    create.set_defaults(handler=cmd_create)

    sub.add_parser("list", help="List projects").set_defaults(handler=cmd_list)

    show = sub.add_parser("show", help="Show a project's panels")
    show.add_argument("--project", help="Project id (default: current)")
    show.set_defaults(handler=cmd_show)

    use = sub.add_parser("use", help="Make a project current")
    use.add_argument("project_id")
    use.set_defaults(handler=cmd_use)

    generate = sub.add_parser("generate", help="Generate panels (3 credits each)")
    generate.add_argument("--project", help="Project id (default: current)")
    generate.set_defaults(handler=cmd_generate)

    regenerate = sub.add_parser("regenerate", help="Regenerate a panel (2 credits)")
    regenerate.add_argument("panel_id")
    regenerate.add_argument("--project", help="Project id (default: current)")
    regenerate.add_argument("--prompt", help="Edited prompt to use")
    regenerate.set_defaults(handler=cmd_regenerate)

    add_panel = sub.add_parser("add-panel", help="Add a panel (3 credits)")
    add_panel.add_argument("--project", help="Project id (default: current)")
    add_panel.add_argument("--scene", default="New scene", help="Scene description")
    add_panel.set_defaults(handler=cmd_add_panel)

    edit = sub.add_parser("edit", help="Edit a panel's prompt or dialogue")
    edit.add_argument("panel_id")
    edit.add_argument("--project", help="Project id (default: current)")
    edit.add_argument("--prompt", help="Replacement prompt")
    edit.add_argument(
        "--dialogue",
        action="append",
        help="Dialogue line (repeat for several bubbles)",
    )
    edit.add_argument("--camera", choices=CAMERA_ANGLES, help="Camera angle")
    edit.add_argument("--expression", choices=EMOTIONS, help="Expression hint")
    edit.set_defaults(handler=cmd_edit)

    reorder = sub.add_parser("reorder", help="Reorder panels; unlisted panels are dropped")
    reorder.add_argument("panel_ids", nargs="+")
    reorder.add_argument("--project", help="Project id (default: current)")
    reorder.set_defaults(handler=cmd_reorder)

    delete_panel = sub.add_parser("delete-panel", help="Delete a panel")
    delete_panel.add_argument("panel_id")
    delete_panel.add_argument("--project", help="Project id (default: current)")
    delete_panel.set_defaults(handler=cmd_delete_panel)

    delete = sub.add_parser("delete", help="Delete a project")
    delete.add_argument("project_id")
    delete.set_defaults(handler=cmd_delete)

    export = sub.add_parser("export", help="Export as PDF (2 credits)")
    export.add_argument("--project", help="Project id (default: current)")
    export.add_argument("--output", type=Path, help="PDF path")
    export.add_argument(
        "--metadata",
        action="store_true",
        help="Also write a JSON metadata file",
    )
    export.set_defaults(handler=cmd_export)

    credits = sub.add_parser("credits", help="Show or add credits")
    credits.add_argument("--add", type=int, help="Credits to add")
    credits.set_defaults(handler=cmd_credits)

    recover = sub.add_parser(
        "recover",
        help="Release panels and projects left generating by an interrupted command",
    )
    recover.set_defaults(handler=cmd_recover)

    check = sub.add_parser("check", help="Test the connection to Gemini")
    check.set_defaults(handler=cmd_check)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        # Load configuration
        config = load_config(env_file=args.config_file)

        # Override with command-line arguments
        if args.state_file:
            config.state_file = args.state_file

        validate_config(config)
        store = build_store(config)

        return args.handler(args, config, store)

    except KeyboardInterrupt:
        logger.info("Cancelled by user")
        return 130

    except InsufficientCreditsError as e:
        logger.info(str(e))
        print(f"Not enough credits! {e}")
        return 1

    except (
        ConfigError,
        StorageError,
        ProjectNotFoundError,
        PanelNotFoundError,
        ProjectBusyError,
        PanelBusyError,
        GenerationError,
        ValueError,
    ) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())
