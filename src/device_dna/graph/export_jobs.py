"""
Intune export jobs: create, poll, download, parse.

Bulk reports (e.g. AppInvByDevice) are not returned inline. A job is
created with a POST, polled until it completes or fails, and the finished
report is downloaded as a zip archive holding a single CSV file.

A job that does not finish within max_wait_seconds is abandoned: it is not
cancelled on the service, the caller just gets JobTimeoutError.
"""

import csv
import logging
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .._types import now_utc, parse_graph_datetime
from ..backoff import Clock, Sleeper, default_sleep, monotonic_clock, poll_backoff
from ..exceptions import JobFailedError, JobTimeoutError, ParseError
from .gateway import RequestGateway

logger = logging.getLogger(__name__)


EXPORT_JOBS_URI = "deviceManagement/reports/exportJobs"
DEFAULT_MAX_WAIT_SECONDS = 60


class ExportJobStatus(str, Enum):
    """Status values reported by the exportJobs endpoint."""
    NOT_STARTED = "notStarted"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self in (ExportJobStatus.NOT_STARTED, ExportJobStatus.IN_PROGRESS)


@dataclass(frozen=True)
class ExportJobSpec:
    """What to export."""
    report_name: str
    filter: str = ""
    select: Sequence[str] = ()
    format: str = "csv"
    localization_type: str = "LocalizedValuesAsAdditionalColumn"

    def to_request(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "reportName": self.report_name,
            "format": self.format,
            "localizationType": self.localization_type,
        }
        if self.filter:
            body["filter"] = self.filter
        if self.select:
            body["select"] = list(self.select)
        return body


@dataclass
class ExportJob:
    """Server-side export job as last observed."""
    id: str
    status: ExportJobStatus
    url: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    report_name: str = ""

    @classmethod
    def from_graph(cls, body: Dict[str, Any]) -> "ExportJob":
        job_id = body.get("id")
        if not job_id:
            raise ParseError("Export job response did not contain an id")
        try:
            status = ExportJobStatus(body.get("status") or ExportJobStatus.NOT_STARTED.value)
        except ValueError:
            # Unknown intermediate states are treated as still running
            status = ExportJobStatus.IN_PROGRESS
        return cls(
            id=job_id,
            status=status,
            url=body.get("url") or None,
            created_at=parse_graph_datetime(body.get("requestDateTime")) or now_utc(),
            report_name=body.get("reportName", ""),
        )

    @property
    def is_terminal(self) -> bool:
        return not self.status.is_pending


def parse_export_archive(archive: bytes, workdir: Path) -> List[Dict[str, str]]:
    """
    Unpack a downloaded export and parse its single CSV file.

    Args:
        archive: Zip payload
        workdir: Scratch directory owned by the caller

    Returns:
        Rows keyed by the header fields

    Raises:
        ParseError: Not a zip, not exactly one CSV, or no header row
    """
    archive_path = workdir / "export.zip"
    archive_path.write_bytes(archive)

    try:
        with zipfile.ZipFile(archive_path) as zf:
            members = [n for n in zf.namelist() if n.lower().endswith(".csv") and not n.endswith("/")]
            if len(members) != 1:
                raise ParseError(f"Expected exactly one CSV in export archive, found {len(members)}")
            extracted = Path(zf.extract(members[0], path=workdir / "extracted"))
    except zipfile.BadZipFile as e:
        raise ParseError(f"Export payload is not a valid zip archive: {e}") from e

    try:
        with open(extracted, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            if not reader.fieldnames:
                raise ParseError(f"{members[0]} has no header row")
            return [dict(row) for row in reader]
    except (UnicodeDecodeError, csv.Error) as e:
        raise ParseError(f"Cannot parse {members[0]}: {e}") from e


class ExportJobPoller:
    """Drives the create/poll/download/parse protocol on top of the gateway."""

    def __init__(
        self,
        gateway: RequestGateway,
        sleep: Optional[Sleeper] = None,
        clock: Optional[Clock] = None,
        temp_dir: Optional[Path] = None,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
    ):
        """
        Initialize the poller.

        Args:
            gateway: Connected request gateway
            sleep: Awaitable sleep between polls (injectable for tests)
            clock: Monotonic clock used to measure the wait limit
            temp_dir: Parent for scratch directories (default: system temp)
            max_wait_seconds: Polling limit when a call does not pass one
        """
        self.gateway = gateway
        self._sleep = sleep or default_sleep
        self._clock = clock or monotonic_clock
        self.temp_dir = temp_dir
        self.max_wait_seconds = max_wait_seconds

    @classmethod
    def from_config(cls, gateway: RequestGateway, config, **kwargs) -> "ExportJobPoller":
        return cls(gateway, max_wait_seconds=config.export_job_max_wait, **kwargs)

    async def run_export_job(
        self,
        spec: ExportJobSpec,
        max_wait_seconds: Optional[float] = None,
    ) -> List[Dict[str, str]]:
        """
        Run an export job end to end.

        Args:
            spec: Report name, filter and columns
            max_wait_seconds: Polling limit (60s default, 90s for large reports)

        Returns:
            Parsed CSV rows

        Raises:
            JobFailedError: Service reported the job as failed
            JobTimeoutError: Job still pending after max_wait_seconds
            ParseError: Payload could not be unpacked or parsed
        """
        job = await self.create_job(spec)
        job = await self.wait_for_completion(job, max_wait_seconds or self.max_wait_seconds)
        return await self.download_rows(job)

    async def create_job(self, spec: ExportJobSpec) -> ExportJob:
        body = await self.gateway.request("POST", EXPORT_JOBS_URI, json=spec.to_request())
        job = ExportJob.from_graph(body)
        logger.info(f"Created export job {job.id} for {spec.report_name}")
        return job

    async def wait_for_completion(self, job: ExportJob, max_wait_seconds: float) -> ExportJob:
        """Poll until the job completes, fails, or the wait limit runs out."""
        policy = poll_backoff(max_wait_seconds)
        started = self._clock()

        for delay in policy.delays():
            await self._sleep(delay)
            body = await self.gateway.request("GET", f"{EXPORT_JOBS_URI}('{job.id}')")
            job = ExportJob.from_graph(body)
            elapsed = self._clock() - started
            logger.debug(f"Export job {job.id}: {job.status.value} after {elapsed:.1f}s")

            if job.status == ExportJobStatus.COMPLETED:
                if not job.url:
                    raise ParseError(f"Export job {job.id} completed without a download url")
                return job

            if job.status == ExportJobStatus.FAILED:
                message = body.get("error") or body.get("errorMessage") or "service reported failure"
                raise JobFailedError(f"Export job {job.id} failed: {message}", job_id=job.id)

            if policy.deadline_reached(elapsed):
                logger.warning(f"Abandoning export job {job.id} after {elapsed:.1f}s")
                raise JobTimeoutError(
                    f"Export job {job.id} did not complete within {max_wait_seconds}s",
                    job_id=job.id,
                    waited_seconds=elapsed,
                )

        raise AssertionError("unreachable")  # delays() is infinite

    async def download_rows(self, job: ExportJob) -> List[Dict[str, str]]:
        """Download and parse a completed job; scratch files are always removed."""
        archive = await self.gateway.download(job.url)
        with tempfile.TemporaryDirectory(prefix="devicedna-export-", dir=self.temp_dir) as workdir:
            rows = parse_export_archive(archive, Path(workdir))
        logger.info(f"Export job {job.id}: {len(rows)} rows")
        return rows
