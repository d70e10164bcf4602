"""boto3 implementation of the resource client (ECS, ELBv2, CloudWatch)."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from taskset_deploy.client.base import (
    MetricQuery,
    PRIMARY,
    ResourceClient,
    TargetHealth,
    TaskSetDescription,
)
from taskset_deploy.config.context import ServiceContext
from taskset_deploy.utils.aws_client import AWSClientManager
from taskset_deploy.utils.logging import get_logger
from taskset_deploy.utils.retry import with_retry

logger = get_logger(__name__)

ALB_NAMESPACE = 'AWS/ApplicationELB'


def target_group_dimension(target_group_arn: str) -> str:
    """``targetgroup/name/id`` part of a target group ARN, as CloudWatch wants it."""
    return target_group_arn.split(':')[-1]


def load_balancer_dimension(load_balancer_arn: str) -> str:
    """``app/name/id`` part of a load balancer ARN."""
    return load_balancer_arn.split(':loadbalancer/', 1)[-1]


def _to_description(task_set: Dict[str, Any]) -> TaskSetDescription:
    return TaskSetDescription(
        id=task_set['id'],
        arn=task_set['taskSetArn'],
        task_definition=task_set.get('taskDefinition', ''),
        status=task_set.get('status', ''),
        stability_status=task_set.get('stabilityStatus', ''),
        running_count=task_set.get('runningCount', 0),
        pending_count=task_set.get('pendingCount', 0),
        computed_desired_count=task_set.get('computedDesiredCount', 0),
        target_group_arns=[
            lb['targetGroupArn'] for lb in task_set.get('loadBalancers', []) if 'targetGroupArn' in lb
        ],
    )


class AWSResourceClient(ResourceClient):
    """Resource client backed by boto3 clients from an ``AWSClientManager``."""

    def __init__(self, client_manager: AWSClientManager):
        """Initialize the client.

        Args:
            client_manager: Source of cached, pooled boto3 clients
        """
        self.client_manager = client_manager

    @property
    def ecs(self):
        return self.client_manager.get_client('ecs')

    @property
    def elbv2(self):
        return self.client_manager.get_client('elbv2')

    @property
    def cloudwatch(self):
        return self.client_manager.get_client('cloudwatch')

    # TaskSets

    @with_retry(max_retries=3)
    def describe_primary_task_set(self, context: ServiceContext) -> Optional[TaskSetDescription]:
        response = self.ecs.describe_services(cluster=context.cluster, services=[context.service])
        services = response.get('services', [])
        if not services:
            reason = next((f.get('reason') for f in response.get('failures', [])), 'MISSING')
            raise ClientError(
                {'Error': {'Code': 'ServiceNotFoundException',
                           'Message': f"Service {context.service} in cluster {context.cluster}: {reason}"}},
                'DescribeServices'
            )

        for task_set in services[0].get('taskSets', []):
            if task_set.get('status') == PRIMARY:
                return _to_description(task_set)
        return None

    def create_task_set(
        self,
        context: ServiceContext,
        task_definition: str,
        target_group_arn: str
    ) -> TaskSetDescription:
        params: Dict[str, Any] = {
            'service': context.service,
            'cluster': context.cluster,
            'taskDefinition': task_definition,
            'loadBalancers': [{
                'targetGroupArn': target_group_arn,
                'containerName': context.container_name,
                'containerPort': context.container_port,
            }],
            'launchType': context.launch_type,
            'scale': {'unit': 'PERCENT', 'value': context.scale_percent},
            'clientToken': uuid.uuid4().hex,
        }
        network = context.network_configuration()
        if network:
            params['networkConfiguration'] = network
        if context.platform_version:
            params['platformVersion'] = context.platform_version

        response = self.ecs.create_task_set(**params)
        description = _to_description(response['taskSet'])
        logger.info(
            f"Created TaskSet {description.id} for {task_definition}",
            extra=context.log_extra(task_set_id=description.id)
        )
        return description

    @with_retry(max_retries=3)
    def describe_task_set(self, context: ServiceContext, task_set_id: str) -> Optional[TaskSetDescription]:
        response = self.ecs.describe_task_sets(
            cluster=context.cluster,
            service=context.service,
            taskSets=[task_set_id]
        )
        task_sets = response.get('taskSets', [])
        if not task_sets:
            return None
        return _to_description(task_sets[0])

    def update_primary_task_set(self, context: ServiceContext, task_set_id: str) -> None:
        self.ecs.update_service_primary_task_set(
            cluster=context.cluster,
            service=context.service,
            primaryTaskSet=task_set_id
        )

    def update_task_set_scale(self, context: ServiceContext, task_set_id: str, percent: float) -> None:
        self.ecs.update_task_set(
            cluster=context.cluster,
            service=context.service,
            taskSet=task_set_id,
            scale={'unit': 'PERCENT', 'value': percent}
        )

    def delete_task_set(self, context: ServiceContext, task_set_id: str) -> None:
        self.ecs.delete_task_set(
            cluster=context.cluster,
            service=context.service,
            taskSet=task_set_id,
            force=False
        )

    # Listener

    @with_retry(max_retries=3)
    def describe_listener_weights(self, context: ServiceContext) -> Dict[str, int]:
        response = self.elbv2.describe_listeners(ListenerArns=[context.listener_arn])
        listeners = response.get('Listeners', [])
        if not listeners:
            raise ClientError(
                {'Error': {'Code': 'ListenerNotFound', 'Message': context.listener_arn}},
                'DescribeListeners'
            )

        for action in listeners[0].get('DefaultActions', []):
            if action.get('Type') != 'forward':
                continue
            forward = action.get('ForwardConfig')
            if forward:
                return {tg['TargetGroupArn']: int(tg.get('Weight', 1)) for tg in forward['TargetGroups']}
            return {action['TargetGroupArn']: 100}

        return {}

    def modify_listener_weights(
        self,
        context: ServiceContext,
        weights: Dict[str, int],
        expected: Optional[Dict[str, int]] = None
    ) -> None:
        # ELBv2 has no conditional write; compare right before writing instead
        if expected is not None:
            current = self.describe_listener_weights(context)
            if current != expected:
                raise ClientError(
                    {'Error': {'Code': 'ConcurrentModification',
                               'Message': f"Listener weights changed to {current}, expected {expected}"}},
                    'ModifyListener'
                )

        self.elbv2.modify_listener(
            ListenerArn=context.listener_arn,
            DefaultActions=[{
                'Type': 'forward',
                'ForwardConfig': {
                    'TargetGroups': [
                        {'TargetGroupArn': arn, 'Weight': weight} for arn, weight in weights.items()
                    ]
                }
            }]
        )

    # Target groups and metrics

    @with_retry(max_retries=3)
    def describe_target_health(self, context: ServiceContext, target_group_arn: str) -> List[TargetHealth]:
        response = self.elbv2.describe_target_health(TargetGroupArn=target_group_arn)
        return [
            TargetHealth(
                target_id=description['Target']['Id'],
                state=description['TargetHealth']['State'],
                reason=description['TargetHealth'].get('Reason'),
            )
            for description in response.get('TargetHealthDescriptions', [])
        ]

    @with_retry(max_retries=3)
    def get_metric_datapoints(
        self,
        context: ServiceContext,
        target_group_arn: str,
        query: MetricQuery,
        end_time: Optional[datetime] = None
    ) -> List[float]:
        end_time = end_time or datetime.now(timezone.utc)
        start_time = end_time - timedelta(seconds=query.period * query.periods)

        response = self.cloudwatch.get_metric_statistics(
            Namespace=ALB_NAMESPACE,
            MetricName=query.metric_name,
            Dimensions=[
                {'Name': 'TargetGroup', 'Value': target_group_dimension(target_group_arn)},
                {'Name': 'LoadBalancer', 'Value': load_balancer_dimension(context.load_balancer_arn)},
            ],
            StartTime=start_time,
            EndTime=end_time,
            Period=query.period,
            Statistics=[query.statistic]
        )
        datapoints = sorted(response.get('Datapoints', []), key=lambda dp: dp['Timestamp'])
        return [float(dp[query.statistic]) for dp in datapoints if query.statistic in dp]

    @with_retry(max_retries=3)
    def describe_alarm_states(self, context: ServiceContext, alarm_names: List[str]) -> Dict[str, str]:
        if not alarm_names:
            return {}
        response = self.cloudwatch.describe_alarms(
            AlarmNames=alarm_names,
            AlarmTypes=['MetricAlarm', 'CompositeAlarm']
        )
        states = {}
        for alarm in response.get('MetricAlarms', []) + response.get('CompositeAlarms', []):
            states[alarm['AlarmName']] = alarm['StateValue']
        return states
