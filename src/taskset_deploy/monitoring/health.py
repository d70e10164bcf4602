"""Health monitor over the load balancer metrics of a target group.

Polls the same metrics the service's CloudWatch alarms watch
(``UnHealthyHostCount`` and ``HTTPCode_Target_5XX_Count``) and applies the
alarm semantics locally: a metric breaches when every period of its
evaluation window is at or above the threshold. The two checks are combined
with OR, and any configured alarm in ``ALARM`` state is a breach as well.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence

from taskset_deploy.client.base import MetricQuery, ResourceClient
from taskset_deploy.config.context import ServiceContext
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

UNHEALTHY_HOST_METRIC = 'UnHealthyHostCount'
HTTP_5XX_METRIC = 'HTTPCode_Target_5XX_Count'


class HealthStatus(Enum):
    """Health verdict values."""
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


@dataclass
class HealthVerdict:
    """Point-in-time health judgment over a target group."""
    target_group_arn: str
    status: HealthStatus
    reason: Optional[str] = None
    unhealthy_hosts: List[float] = field(default_factory=list)
    http_5xx: List[float] = field(default_factory=list)
    observed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def summary(self) -> str:
        if self.healthy:
            return "HEALTHY"
        return f"UNHEALTHY({self.reason})"

    def to_dict(self) -> Dict:
        return {
            'target_group_arn': self.target_group_arn,
            'status': self.status.value,
            'reason': self.reason,
            'unhealthy_hosts': self.unhealthy_hosts,
            'http_5xx': self.http_5xx,
            'observed_at': self.observed_at.isoformat(),
        }


def breaches(datapoints: Sequence[float], threshold: float, periods: int) -> bool:
    """True when the last ``periods`` datapoints all reach ``threshold``.

    Missing datapoints count as not breaching.
    """
    if len(datapoints) < periods:
        return False
    return all(value >= threshold for value in datapoints[-periods:])


class HealthMonitor:
    """Evaluates target group health; read-only, safe to call from many threads."""

    def __init__(self, client: ResourceClient, max_workers: int = 4):
        """Initialize health monitor.

        Args:
            client: Platform resource client
            max_workers: Upper bound on parallel metric reads
        """
        self.client = client
        self.max_workers = max_workers

    def evaluate(self, context: ServiceContext, target_group_arn: str) -> HealthVerdict:
        """Evaluate one target group against the context's thresholds."""
        thresholds = context.settings.health
        host_query = MetricQuery(
            metric_name=UNHEALTHY_HOST_METRIC,
            statistic='Average',
            period=thresholds.evaluation_period,
            periods=thresholds.unhealthy_host_periods,
        )
        error_query = MetricQuery(
            metric_name=HTTP_5XX_METRIC,
            statistic='Sum',
            period=thresholds.evaluation_period,
            periods=thresholds.http_5xx_periods,
        )

        try:
            unhealthy_hosts = self.client.get_metric_datapoints(context, target_group_arn, host_query)
            http_5xx = self.client.get_metric_datapoints(context, target_group_arn, error_query)
            alarm_states = self.client.describe_alarm_states(context, context.alarm_names())
        except Exception as e:
            # No verdict without data; treated as a breach
            logger.error(f"Failed to read health metrics for {target_group_arn}: {e}",
                         extra=context.log_extra())
            return HealthVerdict(
                target_group_arn=target_group_arn,
                status=HealthStatus.UNHEALTHY,
                reason=f"metrics unavailable: {e}",
            )

        reasons = []
        if breaches(unhealthy_hosts, thresholds.unhealthy_host_threshold, thresholds.unhealthy_host_periods):
            reasons.append(
                f"{UNHEALTHY_HOST_METRIC} >= {thresholds.unhealthy_host_threshold:g} "
                f"for {thresholds.unhealthy_host_periods} period(s)"
            )
        if breaches(http_5xx, thresholds.http_5xx_threshold, thresholds.http_5xx_periods):
            reasons.append(
                f"{HTTP_5XX_METRIC} >= {thresholds.http_5xx_threshold:g} "
                f"for {thresholds.http_5xx_periods} period(s)"
            )
        for alarm_name, state in sorted(alarm_states.items()):
            if state == 'ALARM':
                reasons.append(f"alarm {alarm_name} is in ALARM")

        verdict = HealthVerdict(
            target_group_arn=target_group_arn,
            status=HealthStatus.UNHEALTHY if reasons else HealthStatus.HEALTHY,
            reason="; ".join(reasons) or None,
            unhealthy_hosts=unhealthy_hosts,
            http_5xx=http_5xx,
        )
        logger.debug(f"{target_group_arn}: {verdict.summary()}", extra=context.log_extra())
        return verdict

    def evaluate_all(self, context: ServiceContext, target_group_arns: Sequence[str]) -> Dict[str, HealthVerdict]:
        """Evaluate several target groups in parallel on a bounded pool."""
        if len(target_group_arns) <= 1 or self.max_workers <= 1:
            return {arn: self.evaluate(context, arn) for arn in target_group_arns}

        workers = min(self.max_workers, len(target_group_arns))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='health') as pool:
            futures = {arn: pool.submit(self.evaluate, context, arn) for arn in target_group_arns}
            return {arn: future.result() for arn, future in futures.items()}

    def watch(
        self,
        context: ServiceContext,
        target_group_arn: str,
        interval: float,
        token: Optional[CancellationToken] = None
    ) -> Iterator[HealthVerdict]:
        """Yield a verdict every ``interval`` seconds until the consumer stops or ``token`` fires."""
        for verdicts in self.watch_all(context, [target_group_arn], interval, token):
            yield verdicts[target_group_arn]

    def watch_all(
        self,
        context: ServiceContext,
        target_group_arns: Sequence[str],
        interval: float,
        token: Optional[CancellationToken] = None
    ) -> Iterator[Dict[str, HealthVerdict]]:
        """Yield a dict of verdicts per round; infinite and restartable."""
        token = token or CancellationToken()
        while not token.cancelled:
            yield self.evaluate_all(context, target_group_arns)
            if token.wait(interval):
                return
