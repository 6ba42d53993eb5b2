"""
Report artifact writer.

Reports are written once to ``reports_dir`` and served from
``reports_base_url``. Existing files are never overwritten.
"""
import asyncio
import csv
import io
from pathlib import Path
from typing import Iterator, Optional, Tuple

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.models import PaymentReport

logger = structlog.get_logger(__name__)

SUPPORTED_FORMATS = ("json", "csv")

Row = Tuple[str, str, object]


def _report_rows(report: PaymentReport) -> Iterator[Row]:
    analytics = report.analytics
    yield ("period", "start", report.report_period.start.isoformat())
    yield ("period", "end", report.report_period.end.isoformat())
    for key, value in report.summary.items():
        yield ("summary", key, value)
    for status, count in analytics.by_status.items():
        yield ("by_status", status, count)
    for key, value in analytics.booking_payments.model_dump().items():
        yield ("booking_payments", key, value)
    for key, value in analytics.subscription_metrics.model_dump().items():
        yield ("subscription_metrics", key, value)
    for day, revenue in report.trends.daily_revenue.items():
        yield ("daily_revenue", day, revenue)
    for reason in report.top_failure_reasons:
        yield ("failure_reason", reason.reason, reason.count)
    if report.refunds is not None:
        yield ("refunds", "refund_count", report.refunds.refund_count)
        yield ("refunds", "total_refunded", report.refunds.total_refunded)
        for reason, count in report.refunds.by_reason.items():
            yield ("refund_reason", reason, count)


def render_csv(report: PaymentReport) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["section", "metric", "value"])
    writer.writerows(_report_rows(report))
    return buffer.getvalue()


def render(report: PaymentReport) -> str:
    if report.format == "csv":
        return render_csv(report)
    return report.model_dump_json(indent=2)


class ReportWriter:
    """Writes report artifacts and returns their download URL."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.directory = Path(settings.reports_dir)
        self.base_url = settings.reports_base_url.rstrip("/")

    def filename(self, report: PaymentReport) -> str:
        stamp = report.generated_at.strftime("%Y%m%dT%H%M%S")
        return f"payment_report_{report.tenant_id}_{stamp}_{report.id}.{report.format}"

    def _write(self, path: Path, content: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # "x" refuses to replace an existing artifact
        with open(path, "x", encoding="utf-8", newline="") as handle:
            handle.write(content)

    async def write(self, report: PaymentReport) -> str:
        """
        Write a report artifact.

        Args:
            report: Report to render in its own ``format``

        Returns:
            str: Download URL
        """
        filename = self.filename(report)
        path = self.directory / filename
        await asyncio.to_thread(self._write, path, render(report))

        logger.info(
            "report_written",
            tenant_id=report.tenant_id,
            report_id=report.id,
            path=str(path),
            format=report.format,
        )
        return f"{self.base_url}/{filename}"

    def resolve(self, filename: str) -> Optional[Path]:
        """Path of a written artifact, or None for unknown or unsafe names."""
        if Path(filename).name != filename:
            return None
        path = self.directory / filename
        return path if path.is_file() else None
