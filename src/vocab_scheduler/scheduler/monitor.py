"""
Monitoring and Health Check System for the vocabulary delivery scheduler.

Combines host resource metrics with outbox backlog and failure counts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from loguru import logger

from ..config.logging_config import StructuredLogger, LoggedOperation, get_logger
from ..database.models import OutboxStatus
from ..database.operations import DATABASE_PATH, DatabaseError
from ..database.outbox import count_stuck_messages, get_outbox_counts
from ..utils.time_utils import utc_now


@dataclass(frozen=True)
class SystemMetrics:
    """System resource metrics."""
    cpu_percent: float
    memory_percent: float
    disk_usage_percent: float
    available_memory_gb: float
    disk_free_gb: float


@dataclass(frozen=True)
class OutboxMetrics:
    """Outbox backlog and failure counts."""
    status_counts: Dict[str, int]
    overdue_pending: int
    stuck_processing: int

    @property
    def failed(self) -> int:
        return self.status_counts.get(OutboxStatus.FAILED.value, 0)


@dataclass(frozen=True)
class HealthStatus:
    """Overall system health status."""
    is_healthy: bool
    timestamp: datetime
    system_metrics: SystemMetrics
    outbox_metrics: Optional[OutboxMetrics]
    warnings: List[str]
    errors: List[str]


class HealthMonitor:
    """Reports whether scheduling and dispatch are keeping up."""

    def __init__(
        self,
        db_path: Path = DATABASE_PATH,
        stuck_after_minutes: int = 30,
        structured_logger: Optional[StructuredLogger] = None
    ) -> None:
        if stuck_after_minutes <= 0:
            raise ValueError("Stuck threshold must be positive")

        self.db_path: Path = db_path
        self.stuck_after_minutes: int = stuck_after_minutes
        self.structured_logger: StructuredLogger = structured_logger or get_logger()
        logger.info("HealthMonitor initialized")

    def get_system_metrics(self) -> SystemMetrics:
        """Get current system resource metrics."""
        # interval=None returns immediately instead of sampling
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(os.getcwd() if os.name == 'nt' else '/')

        return SystemMetrics(
            cpu_percent=cpu_percent,
            memory_percent=memory.percent,
            disk_usage_percent=(disk.used / disk.total) * 100,
            available_memory_gb=memory.available / (1024**3),
            disk_free_gb=disk.free / (1024**3)
        )

    def get_outbox_metrics(self, now: Optional[datetime] = None) -> OutboxMetrics:
        """Count messages per status plus those that look stuck.

        Raises:
            DatabaseError: If the outbox cannot be read.
        """
        cutoff: datetime = (now or utc_now()) - timedelta(minutes=self.stuck_after_minutes)
        stuck: Dict[str, int] = count_stuck_messages(cutoff, self.db_path)
        return OutboxMetrics(
            status_counts=get_outbox_counts(self.db_path),
            overdue_pending=stuck["overdue_pending"],
            stuck_processing=stuck["stuck_processing"]
        )

    def perform_health_check(self, now: Optional[datetime] = None) -> HealthStatus:
        """Perform comprehensive health check."""
        logger.info("Performing health check")

        with LoggedOperation(self.structured_logger, "health_check"):
            system_metrics = self.get_system_metrics()

            warnings: List[str] = []
            errors: List[str] = []

            if system_metrics.cpu_percent > 80:
                warnings.append(f"High CPU usage: {system_metrics.cpu_percent:.1f}%")
            if system_metrics.memory_percent > 85:
                warnings.append(f"High memory usage: {system_metrics.memory_percent:.1f}%")
            if system_metrics.disk_usage_percent > 90:
                errors.append(f"Critical disk usage: {system_metrics.disk_usage_percent:.1f}%")
            elif system_metrics.disk_usage_percent > 80:
                warnings.append(f"High disk usage: {system_metrics.disk_usage_percent:.1f}%")

            outbox_metrics: Optional[OutboxMetrics] = None
            if not self.db_path.exists():
                errors.append(f"Database file not found: {self.db_path}")
            else:
                try:
                    outbox_metrics = self.get_outbox_metrics(now)
                except DatabaseError as e:
                    errors.append(f"Outbox unreadable: {e}")

            if outbox_metrics is not None:
                if outbox_metrics.stuck_processing:
                    errors.append(
                        f"{outbox_metrics.stuck_processing} messages stuck in processing "
                        f"for over {self.stuck_after_minutes} minutes"
                    )
                if outbox_metrics.overdue_pending:
                    warnings.append(
                        f"{outbox_metrics.overdue_pending} pending messages overdue by "
                        f"over {self.stuck_after_minutes} minutes"
                    )
                if outbox_metrics.failed:
                    warnings.append(f"{outbox_metrics.failed} failed messages in outbox")

            health_status = HealthStatus(
                is_healthy=not errors,
                timestamp=datetime.now(),
                system_metrics=system_metrics,
                outbox_metrics=outbox_metrics,
                warnings=warnings,
                errors=errors
            )

            logger.info(
                f"Health check completed - Status: {'HEALTHY' if health_status.is_healthy else 'UNHEALTHY'} "
                f"({len(warnings)} warnings, {len(errors)} errors)"
            )
            return health_status

    def health_report(self) -> Dict[str, Any]:
        """Run a health check and return it as plain data."""
        health_status = self.perform_health_check()

        report_dict: Dict[str, Any] = {
            'is_healthy': health_status.is_healthy,
            'timestamp': health_status.timestamp.isoformat(),
            'system_metrics': asdict(health_status.system_metrics),
            'outbox': None,
            'warnings': health_status.warnings,
            'errors': health_status.errors
        }
        if health_status.outbox_metrics is not None:
            report_dict['outbox'] = {
                **health_status.outbox_metrics.status_counts,
                'overdue_pending': health_status.outbox_metrics.overdue_pending,
                'stuck_processing': health_status.outbox_metrics.stuck_processing,
            }
        return report_dict
