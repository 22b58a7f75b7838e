"""Platform client backed by the AWS ECS, ECR and ELBv2 APIs."""

import re
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from ecs_manage.config.models import ContainerSpec, TaskTemplate
from ecs_manage.platform.base import DeploymentLimits, PlatformClient, UpdateAck
from ecs_manage.state.models import (
    ServiceDeployment,
    ServiceId,
    ServiceLayout,
    ServiceState,
    TaskDefinitionRevision,
    TaskHealth,
    revision_key,
)
from ecs_manage.utils.aws_client import AWSClientManager
from ecs_manage.utils.errors import ErrorContext, PlatformRejectedError, error_handler
from ecs_manage.utils.logging import get_logger

logger = get_logger(__name__)

# Tag carrying the normalized content hash of a registered revision
CONTENT_HASH_TAG = "ecs-manage:content-hash"

# describe_tasks accepts at most 100 task IDs per call
DESCRIBE_TASKS_BATCH = 100

ECR_IMAGE_RE = re.compile(
    r"^(?P<account>\d{12})\.dkr\.ecr\.(?P<region>[a-z0-9-]+)\.amazonaws\.com(?:\.cn)?/"
    r"(?P<repository>[^:@]+)(?::(?P<tag>[^@]+))?(?:@(?P<digest>sha256:[a-f0-9]+))?$"
)


class EcsPlatformClient(PlatformClient):
    """Thin translation layer between boto3 responses and snapshot models."""

    def __init__(self, client_manager: AWSClientManager):
        """Initialize ECS platform client.

        Args:
            client_manager: Shared boto3 session/client cache
        """
        self.client_manager = client_manager

    @property
    def ecs(self):
        return self.client_manager.get_client('ecs')

    @property
    def ecr(self):
        return self.client_manager.get_client('ecr')

    @property
    def elbv2(self):
        return self.client_manager.get_client('elbv2')

    def _call(
        self,
        operation: str,
        func: Callable[..., Dict[str, Any]],
        label: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Invoke one API operation and translate its failures."""
        try:
            return func(**kwargs)
        except Exception as e:
            raise error_handler.handle_exception(
                e,
                ErrorContext(service=label, operation=operation, aws_operation=operation)
            ) from e

    def describe_service(self, service_id: ServiceId) -> ServiceState:
        response = self._call(
            'DescribeServices',
            self.ecs.describe_services,
            label=str(service_id),
            cluster=service_id.cluster,
            services=[service_id.name]
        )

        services = response.get('services', [])
        if not services:
            reasons = ", ".join(f.get('reason', 'UNKNOWN') for f in response.get('failures', []))
            raise PlatformRejectedError(
                f"Service {service_id} not found ({reasons or 'no description returned'})",
                context=ErrorContext(service=str(service_id), operation='DescribeServices')
            )

        service = services[0]
        if service.get('status') == 'INACTIVE':
            raise PlatformRejectedError(
                f"Service {service_id} is inactive",
                context=ErrorContext(service=str(service_id), operation='DescribeServices')
            )

        return self._to_service_state(service_id, service)

    def _to_service_state(self, service_id: ServiceId, service: Dict[str, Any]) -> ServiceState:
        return ServiceState(
            service_id=service_id,
            status=service.get('status', 'ACTIVE'),
            active_revision=revision_key(service.get('taskDefinition')),
            desired_count=service.get('desiredCount', 0),
            running_count=service.get('runningCount', 0),
            pending_count=service.get('pendingCount', 0),
            deployments=[self._to_deployment(d) for d in service.get('deployments', [])],
            target_groups=[
                lb['targetGroupArn'] for lb in service.get('loadBalancers', [])
                if lb.get('targetGroupArn')
            ],
            health_check_grace_period=service.get('healthCheckGracePeriodSeconds'),
            layout=ServiceLayout(
                launch_type=service.get('launchType'),
                platform_version=service.get('platformVersion'),
                load_balancers=service.get('loadBalancers', []),
                network_configuration=service.get('networkConfiguration'),
                deployment_configuration=service.get('deploymentConfiguration'),
                placement_constraints=service.get('placementConstraints', []),
                placement_strategy=service.get('placementStrategy', [])
            )
        )

    def _to_deployment(self, deployment: Dict[str, Any]) -> ServiceDeployment:
        return ServiceDeployment(
            id=deployment.get('id', ''),
            status=deployment.get('status', 'PRIMARY'),
            revision=revision_key(deployment.get('taskDefinition')),
            desired_count=deployment.get('desiredCount', 0),
            running_count=deployment.get('runningCount', 0),
            pending_count=deployment.get('pendingCount', 0),
            failed_tasks=deployment.get('failedTasks', 0),
            rollout_state=deployment.get('rolloutState'),
            rollout_state_reason=deployment.get('rolloutStateReason')
        )

    def list_tasks(self, service_id: ServiceId) -> List[str]:
        task_arns: List[str] = []

        # Stopped tasks are included so crash loops are visible
        for desired_status in ('RUNNING', 'STOPPED'):
            paginator = self.ecs.get_paginator('list_tasks')
            pages = paginator.paginate(
                cluster=service_id.cluster,
                serviceName=service_id.name,
                desiredStatus=desired_status
            )
            try:
                for page in pages:
                    task_arns.extend(page.get('taskArns', []))
            except Exception as e:
                raise error_handler.handle_exception(
                    e, ErrorContext(service=str(service_id), operation='ListTasks')
                ) from e

        return [arn.rsplit('/', 1)[-1] for arn in task_arns]

    def describe_tasks(self, cluster: str, task_ids: List[str]) -> List[TaskHealth]:
        tasks: List[TaskHealth] = []

        for start in range(0, len(task_ids), DESCRIBE_TASKS_BATCH):
            batch = task_ids[start:start + DESCRIBE_TASKS_BATCH]
            response = self._call('DescribeTasks', self.ecs.describe_tasks, cluster=cluster, tasks=batch)
            tasks.extend(self._to_task_health(task) for task in response.get('tasks', []))

        return tasks

    def _to_task_health(self, task: Dict[str, Any]) -> TaskHealth:
        containers = task.get('containers', [])
        return TaskHealth(
            task_id=task['taskArn'].rsplit('/', 1)[-1],
            revision=revision_key(task.get('taskDefinitionArn')),
            last_status=task.get('lastStatus', 'PENDING'),
            desired_status=task.get('desiredStatus', 'RUNNING'),
            health_status=task.get('healthStatus', 'UNKNOWN'),
            stop_code=task.get('stopCode'),
            stopped_reason=task.get('stoppedReason'),
            container_reasons=tuple(c['reason'] for c in containers if c.get('reason')),
            exit_codes=tuple(c['exitCode'] for c in containers if c.get('exitCode') is not None)
        )

    def list_task_definition_revisions(
        self,
        family: str,
        limit: int
    ) -> List[TaskDefinitionRevision]:
        arns: List[str] = []
        paginator = self.ecs.get_paginator('list_task_definitions')
        try:
            for page in paginator.paginate(familyPrefix=family, status='ACTIVE', sort='DESC'):
                # familyPrefix also matches longer family names
                arns.extend(a for a in page.get('taskDefinitionArns', [])
                            if revision_key(a).rsplit(':', 1)[0] == family)
                if len(arns) >= limit:
                    break
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(operation='ListTaskDefinitions')
            ) from e

        return [self.describe_task_definition(arn) for arn in arns[:limit]]

    def describe_task_definition(self, key: str) -> TaskDefinitionRevision:
        response = self._call(
            'DescribeTaskDefinition',
            self.ecs.describe_task_definition,
            taskDefinition=key,
            include=['TAGS']
        )
        tags = {t['key']: t['value'] for t in response.get('tags', [])}
        return self._to_revision(response['taskDefinition'], tags.get(CONTENT_HASH_TAG))

    def _to_revision(
        self,
        task_definition: Dict[str, Any],
        content_hash: Optional[str]
    ) -> TaskDefinitionRevision:
        containers = [
            ContainerSpec(
                name=c['name'],
                image=c.get('image'),
                # ECS reports 0 for an unset container cpu
                cpu=c.get('cpu') or None,
                memory=c.get('memory'),
                essential=c.get('essential', True),
                command=c.get('command', []),
                environment={e['name']: e.get('value', '') for e in c.get('environment', [])},
                port_mappings=[p['containerPort'] for p in c.get('portMappings', [])
                               if 'containerPort' in p]
            )
            for c in task_definition.get('containerDefinitions', [])
        ]

        template = TaskTemplate(
            family=task_definition['family'],
            containers=containers,
            cpu=task_definition.get('cpu'),
            memory=task_definition.get('memory'),
            network_mode=task_definition.get('networkMode'),
            execution_role_arn=task_definition.get('executionRoleArn'),
            task_role_arn=task_definition.get('taskRoleArn'),
            requires_compatibilities=task_definition.get('requiresCompatibilities', [])
        )

        return TaskDefinitionRevision(
            family=task_definition['family'],
            revision=task_definition['revision'],
            content_hash=content_hash,
            template=template,
            arn=task_definition.get('taskDefinitionArn')
        )

    def register_task_definition(
        self,
        template: TaskTemplate,
        content_hash: str
    ) -> TaskDefinitionRevision:
        request = self._to_register_request(template)
        request['tags'] = [{'key': CONTENT_HASH_TAG, 'value': content_hash}]

        response = self._call(
            'RegisterTaskDefinition',
            self.ecs.register_task_definition,
            **request
        )
        task_definition = response['taskDefinition']

        logger.info(f"Registered task definition {task_definition['family']}:{task_definition['revision']}")

        return TaskDefinitionRevision(
            family=task_definition['family'],
            revision=task_definition['revision'],
            content_hash=content_hash,
            template=template,
            arn=task_definition.get('taskDefinitionArn')
        )

    @staticmethod
    def _to_register_request(template: TaskTemplate) -> Dict[str, Any]:
        container_definitions = []
        for container in template.containers:
            definition: Dict[str, Any] = {
                'name': container.name,
                'image': container.image,
                'essential': container.essential,
                'environment': [
                    {'name': name, 'value': value}
                    for name, value in sorted(container.environment.items())
                ],
                'portMappings': [
                    {'containerPort': port, 'protocol': 'tcp'}
                    for port in sorted(container.port_mappings)
                ],
            }
            if container.cpu is not None:
                definition['cpu'] = container.cpu
            if container.memory is not None:
                definition['memory'] = container.memory
            if container.command:
                definition['command'] = list(container.command)
            container_definitions.append(definition)

        request: Dict[str, Any] = {
            'family': template.family,
            'containerDefinitions': container_definitions,
        }
        optional = {
            'cpu': template.cpu,
            'memory': template.memory,
            'networkMode': template.network_mode,
            'executionRoleArn': template.execution_role_arn,
            'taskRoleArn': template.task_role_arn,
        }
        request.update({k: v for k, v in optional.items() if v is not None})
        if template.requires_compatibilities:
            request['requiresCompatibilities'] = list(template.requires_compatibilities)

        return request

    def update_service(
        self,
        service_id: ServiceId,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        limits: Optional[DeploymentLimits] = None
    ) -> UpdateAck:
        request: Dict[str, Any] = {
            'cluster': service_id.cluster,
            'service': service_id.name,
        }
        if revision is not None:
            request['taskDefinition'] = revision
        if desired_count is not None:
            request['desiredCount'] = desired_count
        if limits is not None:
            request['deploymentConfiguration'] = {
                'maximumPercent': limits.maximum_percent,
                'minimumHealthyPercent': limits.minimum_healthy_percent,
            }

        response = self._call('UpdateService', self.ecs.update_service, label=str(service_id), **request)

        primary = next(
            (d for d in response.get('service', {}).get('deployments', [])
             if d.get('status') == 'PRIMARY'),
            {}
        )
        return UpdateAck(
            service_id=service_id,
            revision=revision,
            desired_count=desired_count,
            deployment_id=primary.get('id')
        )

    def create_service(
        self,
        cluster: str,
        source: ServiceState,
        role: Optional[str] = None
    ) -> ServiceState:
        service_id = ServiceId(cluster=cluster, name=source.service_id.name)
        if not source.active_revision:
            raise PlatformRejectedError(
                f"No task definition found for {source.service_id}",
                context=ErrorContext(service=str(service_id), operation='CreateService')
            )

        layout = source.layout
        request: Dict[str, Any] = {
            'cluster': cluster,
            'serviceName': service_id.name,
            'taskDefinition': source.active_revision,
            'desiredCount': source.desired_count,
        }
        optional = {
            'launchType': layout.launch_type,
            'platformVersion': layout.platform_version,
            'networkConfiguration': layout.network_configuration,
            'deploymentConfiguration': layout.deployment_configuration,
            'role': role,
        }
        request.update({k: v for k, v in optional.items() if v is not None})
        if layout.load_balancers:
            request['loadBalancers'] = list(layout.load_balancers)
            # ECS rejects a grace period on services without a load balancer
            if source.health_check_grace_period is not None:
                request['healthCheckGracePeriodSeconds'] = source.health_check_grace_period
        if layout.placement_constraints:
            request['placementConstraints'] = list(layout.placement_constraints)
        if layout.placement_strategy:
            request['placementStrategy'] = list(layout.placement_strategy)

        response = self._call('CreateService', self.ecs.create_service, label=str(service_id), **request)

        logger.info(f"Created service {service_id} from {source.service_id}")
        return self._to_service_state(service_id, response['service'])

    def list_services(self, cluster: str) -> List[str]:
        names: List[str] = []
        paginator = self.ecs.get_paginator('list_services')
        try:
            for page in paginator.paginate(cluster=cluster):
                names.extend(arn.rsplit('/', 1)[-1] for arn in page.get('serviceArns', []))
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(operation='ListServices')
            ) from e
        return names

    def image_exists(self, image: str) -> bool:
        match = ECR_IMAGE_RE.match(image)
        if match is None:
            # Only ECR repositories can be checked
            return True

        image_id = {'imageDigest': match.group('digest')} if match.group('digest') \
            else {'imageTag': match.group('tag') or 'latest'}

        try:
            response = self.ecr.describe_images(
                registryId=match.group('account'),
                repositoryName=match.group('repository'),
                imageIds=[image_id]
            )
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in ('ImageNotFoundException', 'RepositoryNotFoundException'):
                return False
            raise error_handler.handle_exception(
                e, ErrorContext(operation='DescribeImages', aws_service='ecr')
            ) from e

        return bool(response.get('imageDetails'))

    def target_group_exists(self, arn: str) -> bool:
        try:
            response = self.elbv2.describe_target_groups(TargetGroupArns=[arn])
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in ('TargetGroupNotFound', 'TargetGroupNotFoundException'):
                return False
            raise error_handler.handle_exception(
                e, ErrorContext(operation='DescribeTargetGroups', aws_service='elbv2')
            ) from e

        return bool(response.get('TargetGroups'))
