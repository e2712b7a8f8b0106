import json
import logging
import os
from typing import List, Optional

from approval_engine.config import settings
from approval_engine.engine.coordinator import request_coordinator, HistoryEntry, RequestHistory

# ReportLab Imports
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from reportlab.lib.styles import getSampleStyleSheet

logger = logging.getLogger(__name__)

class HistoryExporter:
    """
    Writes the audit timeline of one approval request to a PDF or JSON file.
    """

    def __init__(self, coordinator=None, output_dir: Optional[str] = None):
        self.coordinator = coordinator or request_coordinator
        self.output_dir = output_dir or settings.REPORT_DIR or "."

    async def generate_history_report(self, request_id: str, format: str = "PDF") -> str:
        """Returns the path of the written file."""
        fmt = format.upper()
        if fmt not in ("PDF", "JSON"):
            raise ValueError(f"Unsupported format {format!r}")

        history = await self.coordinator.history(request_id)
        os.makedirs(self.output_dir, exist_ok=True)

        if fmt == "PDF":
            filename = os.path.join(self.output_dir, f"approval_history_{request_id}.pdf")
            self._create_pdf(filename, request_id, history)
        else:
            filename = os.path.join(self.output_dir, f"approval_history_{request_id}.json")
            with open(filename, "w") as f:
                json.dump(history.model_dump(mode="json"), f, indent=2)

        logger.info(f"History report for {request_id} written to {filename}")
        return filename

    def _create_pdf(self, filename: str, request_id: str, history: RequestHistory):
        doc = SimpleDocTemplate(filename, pagesize=letter)
        styles = getSampleStyleSheet()
        story = []

        summary = history.summary
        story.append(Paragraph(f"Approval History: {request_id}", styles['Title']))
        story.append(Paragraph(
            f"{summary['purpose']} - {summary['amount']:.2f} {summary['currency']} "
            f"({summary['status']}, level {summary['current_level']}/{summary['total_levels']})",
            styles['Normal']
        ))
        story.append(Spacer(1, 12))

        t = Table(self._rows(history.timeline), colWidths=[100, 80, 100, 250])
        t.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
            ('BACKGROUND', (0, 1), (-1, -1), colors.beige),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
        ]))

        story.append(t)
        doc.build(story)

    @staticmethod
    def _rows(entries: List[HistoryEntry]) -> List[List[str]]:
        rows = [["Timestamp", "Event", "Actor", "Details"]]
        for e in entries:
            details = e.action if not e.details else f"{e.action}: {e.details}"
            if len(details) > 100:
                details = details[:100] + "..."
            rows.append([e.at.strftime("%Y-%m-%d %H:%M:%S"), str(e.type), e.actor_id or "system", details])
        return rows

history_exporter = HistoryExporter()
