"""Rule set registry — versioned, append-only once published.

A version that a published batch ran against is frozen: revising it
appends version N+1 as a new draft and leaves N intact. Unpublished drafts
are revised in place.

Status transitions follow RULE_SET_TRANSITIONS:
    DRAFT → ACTIVE | ARCHIVED
    ACTIVE → ARCHIVED
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, List, Optional, Set, Tuple

from attain.errors import ConfigurationError, RuleSetImmutableError
from attain.models.plan import RULE_SET_TRANSITIONS, RuleSet, RuleSetStatus

logger = logging.getLogger(__name__)


class RuleSetRegistry:
    """In-memory store of rule set versions.

    Usage:
        registry = RuleSetRegistry()
        registry.register(rule_set)
        registry.activate(rule_set.rule_set_id, rule_set.version)
        current = registry.get(rule_set.rule_set_id)
    """

    def __init__(self) -> None:
        self._versions: Dict[str, Dict[int, RuleSet]] = {}
        self._published: Set[Tuple[str, int]] = set()

    def register(self, rule_set: RuleSet) -> RuleSet:
        """Add a new rule set version.

        Raises:
            RuleSetImmutableError: the version exists and has been published.
            ConfigurationError: the version exists already.
        """
        versions = self._versions.setdefault(rule_set.rule_set_id, {})
        if rule_set.version in versions:
            if self.is_published(rule_set.rule_set_id, rule_set.version):
                raise RuleSetImmutableError(
                    f"{rule_set.rule_set_id} v{rule_set.version} is published and cannot be replaced"
                )
            raise ConfigurationError(
                f"{rule_set.rule_set_id} v{rule_set.version} is already registered"
            )
        versions[rule_set.version] = rule_set
        logger.info("registered rule set %s v%d", rule_set.rule_set_id, rule_set.version)
        return rule_set

    def get(self, rule_set_id: str, version: Optional[int] = None) -> Optional[RuleSet]:
        """A specific version, or the latest version when ``version`` is None."""
        versions = self._versions.get(rule_set_id)
        if not versions:
            return None
        if version is None:
            return versions[max(versions)]
        return versions.get(version)

    def versions(self, rule_set_id: str) -> List[RuleSet]:
        versions = self._versions.get(rule_set_id, {})
        return [versions[v] for v in sorted(versions)]

    def active(self, rule_set_id: str) -> Optional[RuleSet]:
        for rule_set in reversed(self.versions(rule_set_id)):
            if rule_set.status == RuleSetStatus.ACTIVE:
                return rule_set
        return None

    def rule_set_ids(self, tenant_id: Optional[str] = None) -> List[str]:
        return sorted(
            rule_set_id for rule_set_id, versions in self._versions.items()
            if tenant_id is None or any(r.tenant_id == tenant_id for r in versions.values())
        )

    def is_published(self, rule_set_id: str, version: int) -> bool:
        return (rule_set_id, version) in self._published

    def mark_published(self, rule_set_id: str, version: int) -> None:
        if self.get(rule_set_id, version) is None:
            raise ConfigurationError(f"unknown rule set {rule_set_id} v{version}")
        if (rule_set_id, version) not in self._published:
            self._published.add((rule_set_id, version))
            logger.info("rule set %s v%d published; further edits create a new version", rule_set_id, version)

    def revise(self, revised: RuleSet) -> RuleSet:
        """Store edited content for ``revised.rule_set_id``.

        The latest version is replaced in place while it is an unpublished
        draft. Otherwise the edit becomes a new draft version N+1.
        """
        latest = self.get(revised.rule_set_id)
        if latest is None:
            raise ConfigurationError(f"unknown rule set {revised.rule_set_id}")
        if revised.tenant_id != latest.tenant_id:
            raise ConfigurationError(
                f"{revised.rule_set_id}: revision changes tenant {latest.tenant_id} → {revised.tenant_id}"
            )

        in_place = (
            latest.status == RuleSetStatus.DRAFT
            and not self.is_published(latest.rule_set_id, latest.version)
        )
        if in_place:
            stored = dataclasses.replace(revised, version=latest.version, status=RuleSetStatus.DRAFT)
            self._versions[revised.rule_set_id][latest.version] = stored
            logger.info("revised draft %s v%d in place", stored.rule_set_id, stored.version)
            return stored

        stored = dataclasses.replace(revised, version=latest.version + 1, status=RuleSetStatus.DRAFT)
        self._versions[revised.rule_set_id][stored.version] = stored
        logger.info("revised %s as new version v%d", stored.rule_set_id, stored.version)
        return stored

    def _transition(self, rule_set_id: str, version: int, target: RuleSetStatus) -> RuleSet:
        current = self.get(rule_set_id, version)
        if current is None:
            raise ConfigurationError(f"unknown rule set {rule_set_id} v{version}")
        if target not in RULE_SET_TRANSITIONS[current.status]:
            raise ConfigurationError(
                f"{rule_set_id} v{version}: illegal status transition "
                f"{current.status.value} → {target.value}"
            )
        updated = dataclasses.replace(current, status=target)
        self._versions[rule_set_id][version] = updated
        return updated

    def activate(self, rule_set_id: str, version: int) -> RuleSet:
        """Activate a version. Any other active version of the rule set is archived."""
        for other in self.versions(rule_set_id):
            if other.version != version and other.status == RuleSetStatus.ACTIVE:
                self._transition(rule_set_id, other.version, RuleSetStatus.ARCHIVED)
        return self._transition(rule_set_id, version, RuleSetStatus.ACTIVE)

    def archive(self, rule_set_id: str, version: int) -> RuleSet:
        return self._transition(rule_set_id, version, RuleSetStatus.ARCHIVED)
