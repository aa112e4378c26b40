"""
Output management for comic projects.

This module renders a project as a printable PDF: a title page followed by
the panels, two per A4 page.
"""

import io
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from PIL import Image
from fpdf import FPDF

from comic_studio.config import Config
from comic_studio.gemini_client import decode_image_reference
from comic_studio.models import Panel, Project

logger = logging.getLogger(__name__)


PAGE_FORMAT = "A4"
MARGIN = 20  # mm
SCENE_PREVIEW_CHARS = 100
CREDIT_LINE = "Created with Comic Studio"


def to_latin1(text: str) -> str:
    """Core PDF fonts only cover Latin-1; replace anything else."""
    return text.encode("latin-1", "replace").decode("latin-1")


def slugify(title: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_")
    return slug or "comic"


def scene_preview(panel: Panel) -> str:
    return panel.scene_description[:SCENE_PREVIEW_CHARS] + "..."


class OutputManager:
    """Manages exported files for comic projects."""

    def __init__(self, config: Config):
        """
        Initialize output manager.

        Args:
            config: Application configuration
        """
        self.config = config
        self.output_dir = config.output_dir
        self._ensure_output_dir()

    def _ensure_output_dir(self):
        """Ensure output directory exists."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Output directory ready: {self.output_dir}")

    def default_pdf_path(self, project: Project) -> Path:
        return self.output_dir / f"{slugify(project.title)}.pdf"

    def export_pdf(self, project: Project, output_path: Optional[Path] = None) -> Path:
        """
        Render a project to PDF.

        Args:
            project: Project to render (read only)
            output_path: Target file, defaults to output_dir/<title>.pdf

        Returns:
            Path to the written PDF
        """
        output_path = output_path or self.default_pdf_path(project)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        pdf = FPDF(orientation="P", unit="mm", format=PAGE_FORMAT)
        pdf.set_auto_page_break(False)

        self._add_title_page(pdf, project.title or "Untitled Comic")

        page_height = pdf.h
        for i, panel in enumerate(project.panels):
            if i % 2 == 0:
                pdf.add_page()
            y = MARGIN if i % 2 == 0 else page_height / 2 + 10
            self._add_panel(pdf, panel, y)

        pdf.output(str(output_path))
        logger.info(f"Exported {len(project.panels)} panel(s) to {output_path}")
        return output_path

    def save_metadata(self, project: Project, output_path: Optional[Path] = None) -> Path:
        """
        Save project metadata next to the PDF.

        Inline image data is left out; only the reference kind is noted.

        Returns:
            Path to metadata JSON file
        """
        output_path = output_path or self.output_dir / f"{slugify(project.title)}.json"
        output_path.parent.mkdir(parents=True, exist_ok=True)

        data = project.to_dict()
        for panel in data["panels"]:
            if panel["imageUrl"].startswith("data:"):
                panel["imageUrl"] = "<inline image>"
        data["exportTime"] = datetime.now().isoformat()
        data["numPanels"] = len(project.panels)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info(f"Saved metadata to {output_path}")
        return output_path

    def _add_title_page(self, pdf: FPDF, title: str) -> None:
        pdf.add_page()
        page_width, page_height = pdf.w, pdf.h

        pdf.set_font("Helvetica", size=32)
        pdf.set_xy(MARGIN, page_height / 2 - 30)
        pdf.cell(page_width - 2 * MARGIN, 16, to_latin1(title), align="C")

        pdf.set_font("Helvetica", size=14)
        pdf.set_xy(MARGIN, page_height / 2 + 5)
        pdf.cell(page_width - 2 * MARGIN, 10, CREDIT_LINE, align="C")

    def _add_panel(self, pdf: FPDF, panel: Panel, y: float) -> None:
        page_width, page_height = pdf.w, pdf.h
        box_width = page_width - 2 * MARGIN
        box_height = page_height / 2 - 30

        pdf.set_draw_color(100)
        pdf.rect(MARGIN, y, box_width, box_height)

        image = self._load_panel_image(panel)
        if image is not None:
            self._place_image(pdf, image, MARGIN, y, box_width, box_height)

        # Scene description
        pdf.set_font("Helvetica", size=10)
        pdf.set_xy(MARGIN + 5, y + 5)
        pdf.multi_cell(box_width - 10, 5, to_latin1(scene_preview(panel)))

        # First dialogue line
        if panel.dialogue:
            pdf.set_font("Helvetica", size=12)
            pdf.set_xy(MARGIN, y + box_height - 15)
            pdf.cell(box_width, 8, to_latin1(panel.dialogue[0]), align="C")

    def _place_image(
        self,
        pdf: FPDF,
        image: Image.Image,
        x: float,
        y: float,
        box_width: float,
        box_height: float,
    ) -> None:
        """Fit image inside the box, centred, keeping its aspect ratio."""
        scale = min(box_width / image.width, box_height / image.height)
        width, height = image.width * scale, image.height * scale
        pdf.image(
            image,
            x=x + (box_width - width) / 2,
            y=y + (box_height - height) / 2,
            w=width,
            h=height,
        )

    def _load_panel_image(self, panel: Panel) -> Optional[Image.Image]:
        """
        Load a panel's image if it is available locally.

        Returns:
            RGB image, or None for remote or unreadable references
        """
        if not panel.image_url:
            return None
        try:
            data, _ = decode_image_reference(panel.image_url)
            with Image.open(io.BytesIO(data)) as img:
                return img.convert("RGB")
        except (ValueError, OSError) as e:
            logger.debug(f"Leaving panel {panel.id} image out of the PDF: {e}")
            return None
