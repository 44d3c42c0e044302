"""Environment-based configuration for the reconciliation core."""

import logging
from datetime import timedelta

from pydantic_settings import BaseSettings

from operator_tidb.types import MemberType


class Settings(BaseSettings):
    """Operator configuration.

    All settings can be overridden via environment variables with
    TIDB_OPERATOR_ prefix. For example:
        TIDB_OPERATOR_AUTO_FAILOVER=false
        TIDB_OPERATOR_TIKV_FAILOVER_PERIOD_SECONDS=600
    """

    # Resync cadence
    resync_duration_seconds: float = 30.0

    # Multiple of the resync interval a never-ready pod is given to join
    # before scale in treats it as never joined
    scale_in_grace_periods: int = 5

    # Failover
    auto_failover: bool = True
    pd_failover_period_seconds: float = 300.0
    tikv_failover_period_seconds: float = 300.0
    tiflash_failover_period_seconds: float = 300.0
    dm_master_failover_period_seconds: float = 300.0
    max_failover_count: int = 3

    # Cluster-scoped permissions on persistent volumes
    volumes_accessible: bool = True

    # Requeue backoff
    requeue_min_seconds: float = 1.0
    requeue_max_seconds: float = 60.0

    # Membership API
    membership_timeout_seconds: float = 5.0

    log_level: str = "INFO"

    model_config = {"env_prefix": "TIDB_OPERATOR_"}

    @property
    def resync_duration(self) -> timedelta:
        return timedelta(seconds=self.resync_duration_seconds)

    @property
    def scale_in_grace_window(self) -> timedelta:
        return self.resync_duration * self.scale_in_grace_periods

    def failover_period(self, mt: MemberType) -> timedelta:
        seconds = {
            MemberType.PD: self.pd_failover_period_seconds,
            MemberType.TIKV: self.tikv_failover_period_seconds,
            MemberType.TIFLASH: self.tiflash_failover_period_seconds,
            MemberType.DM_MASTER: self.dm_master_failover_period_seconds,
        }[mt]
        return timedelta(seconds=seconds)


settings = Settings()


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger for processes embedding the operator."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
