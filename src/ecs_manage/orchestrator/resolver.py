"""Task definition resolution by normalized content hash."""

import hashlib
import json
from typing import Any, Callable, Dict, List, Optional

from ecs_manage.config.models import ServiceSpec, TaskTemplate
from ecs_manage.platform.base import PlatformClient
from ecs_manage.state.models import TaskDefinitionRevision
from ecs_manage.utils.errors import ErrorContext, PlatformUnavailableError, SpecInvalidError
from ecs_manage.utils.logging import get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)

# Callable returning the family's registered revisions, most recent first
RevisionLookup = Callable[[], List[TaskDefinitionRevision]]


def normalize_template(template: TaskTemplate) -> Dict[str, Any]:
    """Canonical, order-independent representation of a template.

    Containers are ordered by name, environment by key and ports
    numerically, so two templates that describe the same task always
    normalize identically.
    """
    data = template.model_dump(mode='json')

    containers = []
    for container in sorted(data['containers'], key=lambda c: c['name']):
        container['environment'] = dict(sorted(container['environment'].items()))
        container['port_mappings'] = sorted(container['port_mappings'])
        containers.append(container)

    data['containers'] = containers
    data['requires_compatibilities'] = sorted(data['requires_compatibilities'])
    return data


def compute_content_hash(template: TaskTemplate) -> str:
    """SHA-256 of the normalized template."""
    canonical = json.dumps(normalize_template(template), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def validate_template(template: TaskTemplate, service: Optional[str] = None) -> None:
    """Check the fields a registration cannot do without.

    Raises:
        SpecInvalidError: If the template has no containers or a container
            has no image reference
    """
    context = ErrorContext(service=service, operation='resolve_task_definition')

    if not template.family:
        raise SpecInvalidError('Task definition family is required', context=context)

    if not template.containers:
        raise SpecInvalidError(
            f"Task definition '{template.family}' has no containers",
            context=context,
            suggestions=['Declare at least one container under task_definition.containers']
        )

    missing = [c.name for c in template.containers if not c.image or not c.image.strip()]
    if missing:
        raise SpecInvalidError(
            f"Containers without an image reference: {', '.join(missing)}",
            context=context,
            suggestions=['Set image for every container, ideally pinned by digest']
        )


class TaskDefinitionResolver:
    """Finds or registers the revision matching a requested spec.

    One resolver serves one invocation; it remembers every hash it has
    resolved so the same content is never registered twice.
    """

    def __init__(
        self,
        platform: PlatformClient,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize resolver.

        Args:
            platform: Platform client used for registration
            retry_strategy: Backoff for transient registration failures
        """
        self.platform = platform
        self.retry_strategy = retry_strategy or RetryStrategy()
        self._resolved: Dict[str, TaskDefinitionRevision] = {}
        self.registrations: List[TaskDefinitionRevision] = []

    @staticmethod
    def revision_hash(revision: TaskDefinitionRevision) -> Optional[str]:
        """Stored hash of a revision, computed from its template if untagged."""
        if revision.content_hash:
            return revision.content_hash
        if revision.template is not None:
            return compute_content_hash(revision.template)
        return None

    def find_existing(
        self,
        content_hash: str,
        known_revisions: List[TaskDefinitionRevision],
        prefer: Optional[str] = None
    ) -> Optional[TaskDefinitionRevision]:
        """Most recent known revision with the given hash.

        A matching revision whose key equals ``prefer`` wins over newer
        duplicates, so a service already running the content is left alone.
        """
        matches = [r for r in known_revisions if self.revision_hash(r) == content_hash]
        for revision in matches:
            if revision.key == prefer:
                return revision
        return matches[0] if matches else None

    def resolve(
        self,
        spec: ServiceSpec,
        known_revisions: List[TaskDefinitionRevision],
        refresh: Optional[RevisionLookup] = None,
        prefer: Optional[str] = None
    ) -> TaskDefinitionRevision:
        """Return the revision a service should run.

        Args:
            spec: Requested service spec
            known_revisions: Registered revisions of the family, most recent first
            refresh: Re-lists the family; consulted before retrying a
                registration that failed transiently, in case it landed
            prefer: Revision key to reuse when several revisions match,
                normally the one the service runs

        Returns:
            An existing revision with identical content, or a newly
            registered one

        Raises:
            SpecInvalidError: If required template fields are missing
            PlatformRejectedError: If registration is refused
            PlatformUnavailableError: If registration keeps failing
        """
        template = spec.task_definition
        validate_template(template, spec.service_key)

        content_hash = compute_content_hash(template)

        if content_hash in self._resolved:
            return self._resolved[content_hash]

        existing = self.find_existing(content_hash, known_revisions, prefer)
        if existing is not None:
            logger.info(f"Reusing task definition {existing.key} (hash {content_hash[:12]})")
            self._resolved[content_hash] = existing
            return existing

        revision = self._register(template, content_hash, refresh)
        self._resolved[content_hash] = revision
        return revision

    def _register(
        self,
        template: TaskTemplate,
        content_hash: str,
        refresh: Optional[RevisionLookup]
    ) -> TaskDefinitionRevision:
        """Register once; before any retry, check whether the last call landed."""
        attempt = 0

        while True:
            try:
                revision = self.platform.register_task_definition(template, content_hash)
                self.registrations.append(revision)
                logger.info(f"Registered task definition {revision.key} (hash {content_hash[:12]})")
                return revision
            except PlatformUnavailableError as e:
                if not self.retry_strategy.should_retry(e, attempt):
                    raise

                delay = self.retry_strategy.get_delay(attempt)
                logger.warning(
                    f"Registering {template.family} failed: {e.message}. "
                    f"Checking for the revision before retrying in {delay:.2f}s..."
                )
                self.retry_strategy.sleep(delay)
                attempt += 1

                if refresh is not None:
                    landed = self.find_existing(content_hash, refresh())
                    if landed is not None:
                        logger.info(f"Registration of {landed.key} had succeeded; reusing it")
                        self.registrations.append(landed)
                        return landed
