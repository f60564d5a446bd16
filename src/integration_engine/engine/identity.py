"""Identity reconciliation across external systems.

Every external account is attached to one canonical user keyed by canonical email.
Confidence grows with independent corroborating sources: 1 - prod(1 - w_i).
Disagreements are parked as CONFLICTED or PENDING_REVIEW, never overwritten.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional
from prometheus_client import Counter
from integration_engine.clock import Clock, utcnow
from integration_engine.config import get_settings, parse_float_map
from integration_engine.errors import DuplicateRecordError, NotFoundError, IdentityConflictError, InvalidConfigError
from integration_engine.infrastructure.retry import KeyedLock
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import IdentityStatus
from integration_engine.models.tables import IdentityMapping

logger = logging.getLogger(__name__)

IDENTITY_RESOLUTIONS = Counter('integration_identity_resolutions_total', 'Identity resolutions by outcome', ['outcome'])

DOT_INSENSITIVE_DOMAINS = {"gmail.com"}
DOMAIN_ALIASES = {"googlemail.com": "gmail.com"}


def canonicalize_email(email: str) -> str:
    """Lower-case, trim, drop +tags and provider aliasing (gmail dots, googlemail)."""
    if not email or "@" not in email:
        raise InvalidConfigError(f"not an email address: {email!r}")
    local, _, domain = email.strip().lower().rpartition("@")
    if not local or not domain:
        raise InvalidConfigError(f"not an email address: {email!r}")
    domain = DOMAIN_ALIASES.get(domain, domain)
    local = local.split("+", 1)[0]
    if domain in DOT_INSENSITIVE_DOMAINS:
        local = local.replace(".", "")
    if not local:
        raise InvalidConfigError(f"not an email address: {email!r}")
    return f"{local}@{domain}"


class IdentityResolver:
    def __init__(self, storage: Storage, registry=None, clock: Clock = utcnow,
                 source_weights: Dict[str, float] | None = None, default_weight: float | None = None,
                 promotion_threshold: float | None = None, conflict_confidence: float | None = None):
        s = get_settings()
        self.storage = storage
        self.registry = registry
        self.clock = clock
        self.mappings = storage.repo(IdentityMapping)
        self.source_weights = source_weights if source_weights is not None else parse_float_map(s.identity_source_weights)
        self.default_weight = s.identity_default_source_weight if default_weight is None else default_weight
        self.promotion_threshold = s.identity_promotion_threshold if promotion_threshold is None else promotion_threshold
        self.conflict_confidence = s.identity_conflict_confidence if conflict_confidence is None else conflict_confidence
        self._locks = KeyedLock()

    def weight(self, system: str) -> float:
        w = self.source_weights.get(system, self.default_weight)
        return min(1.0, max(0.0, w))

    def confidence_for(self, systems) -> float:
        remaining = 1.0
        for system in systems:
            remaining *= 1.0 - self.weight(system)
        return round(min(1.0, max(0.0, 1.0 - remaining)), 6)

    def _promoted(self, status: IdentityStatus, confidence: float) -> IdentityStatus:
        if status == IdentityStatus.PENDING_REVIEW and confidence >= self.promotion_threshold:
            return IdentityStatus.ACTIVE
        return status

    @staticmethod
    def _open_conflict(mapping: IdentityMapping) -> bool:
        return bool(mapping.conflict_resolution) and not mapping.conflict_resolution.get("resolved", False)

    # Lookup

    def lookup(self, external_system: str, external_id: str) -> Optional[IdentityMapping]:
        return self.mappings.find_one(IdentityMapping.external_mappings[external_system].as_string() == str(external_id))

    def get(self, nova_user_id: str) -> IdentityMapping:
        m = self.mappings.find_one(IdentityMapping.nova_user_id == nova_user_id)
        if m is None:
            raise NotFoundError(f"identity {nova_user_id} not found")
        return m

    def by_email(self, email: str) -> Optional[IdentityMapping]:
        return self.mappings.find_one(IdentityMapping.email_canonical == canonicalize_email(email))

    def external_id_for(self, nova_user_id: str, external_system: str) -> Optional[str]:
        return (self.get(nova_user_id).external_mappings or {}).get(external_system)

    def _merge_target(self, mapping: Optional[IdentityMapping]) -> Optional[IdentityMapping]:
        """Follow merged_into pointers from an identity folded away by `merge`."""
        seen = set()
        while mapping is not None and mapping.status == IdentityStatus.INACTIVE:
            target = (mapping.conflict_resolution or {}).get("merged_into")
            if not target or target in seen:
                break
            seen.add(target)
            mapping = self.mappings.find_one(IdentityMapping.nova_user_id == target)
        return mapping

    def _lock_keys(self, canonical: str, system: str, external_id: str) -> set:
        keys = {canonical}
        owner = self.lookup(system, external_id)
        if owner is not None:
            keys.add(owner.email_canonical)
        target = self._merge_target(self.mappings.find_one(IdentityMapping.email_canonical == canonical))
        if target is not None:
            keys.add(target.email_canonical)
        return keys

    @contextmanager
    def _hold(self, canonical: str, system: str, external_id: str):
        """Lock every canonical email a change to (system, external_id) may rewrite."""
        keys = self._lock_keys(canonical, system, external_id)
        while True:
            with self._locks.hold_many(keys):
                current = self._lock_keys(canonical, system, external_id)
                if current <= keys:
                    yield
                    return
            # ownership moved between the read and the lock
            keys = keys | current

    # Resolution

    def resolve(self, external_system: str, external_id: str, email: str, connector_id: str | None = None,
                verification_method: str = "sync") -> IdentityMapping:
        if self.registry is not None and connector_id is not None:
            self.registry.get(connector_id)
        canonical = canonicalize_email(email)
        external_id = str(external_id)
        with self._hold(canonical, external_system, external_id):
            owner = self.lookup(external_system, external_id)
            existing = self._merge_target(self.mappings.find_one(IdentityMapping.email_canonical == canonical))
            if owner is not None and (existing is None or owner.id != existing.id):
                return self._collision(owner, existing, external_system, external_id, email, canonical, connector_id, verification_method)
            if existing is None:
                try:
                    return self._create(external_system, external_id, email, canonical, connector_id, verification_method)
                except DuplicateRecordError:
                    # another worker created it first
                    existing = self.mappings.find_one(IdentityMapping.email_canonical == canonical)
                    if existing is None:
                        raise
            return self._merge(existing, external_system, external_id, connector_id, verification_method)

    def _source(self, connector_id: str | None, method: str) -> Dict[str, Any]:
        return {"verified_at": self.clock().isoformat(), "method": method, "connector_id": connector_id}

    def _create(self, system, external_id, email, canonical, connector_id, method) -> IdentityMapping:
        now = self.clock()
        confidence = self.confidence_for([system])
        mapping = self.mappings.add(IdentityMapping(
            email=email.strip(),
            email_canonical=canonical,
            external_mappings={system: external_id},
            sources={system: self._source(connector_id, method)},
            confidence=confidence,
            last_verified_at=now,
            verification_method=method,
            status=self._promoted(IdentityStatus.PENDING_REVIEW, confidence),
            created_at=now,
            updated_at=now,
        ))
        IDENTITY_RESOLUTIONS.labels("created").inc()
        logger.info("identity created", extra={"nova_user_id": mapping.nova_user_id, "system": system, "status": mapping.status.value})
        return mapping

    def _merge(self, mapping: IdentityMapping, system, external_id, connector_id, method) -> IdentityMapping:
        now = self.clock()
        mappings = dict(mapping.external_mappings or {})
        sources = dict(mapping.sources or {})
        current = mappings.get(system)
        if current is not None and current != external_id:
            return self._disagreement(mapping, system, current, external_id, connector_id, method)
        outcome = "corroborated" if current == external_id else "merged"
        mappings[system] = external_id
        sources[system] = self._source(connector_id, method)
        confidence = max(mapping.confidence, self.confidence_for(mappings.keys()))
        updated = self.mappings.update(
            mapping.id,
            external_mappings=mappings,
            sources=sources,
            confidence=confidence,
            last_verified_at=now,
            verification_method=method,
            status=mapping.status if self._open_conflict(mapping) else self._promoted(mapping.status, confidence),
            updated_at=now,
        )
        IDENTITY_RESOLUTIONS.labels(outcome).inc()
        return updated

    def _disagreement(self, mapping: IdentityMapping, system, current, candidate, connector_id, method) -> IdentityMapping:
        high = mapping.confidence >= self.conflict_confidence
        status = IdentityStatus.CONFLICTED if high else IdentityStatus.PENDING_REVIEW
        if mapping.status == IdentityStatus.CONFLICTED:
            status = IdentityStatus.CONFLICTED
        conflict = {
            "kind": "external_id_mismatch",
            "system": system,
            "candidates": [
                {"external_id": current, "source": (mapping.sources or {}).get(system)},
                {"external_id": candidate, "source": self._source(connector_id, method)},
            ],
            "confidence_at_detection": mapping.confidence,
            "detected_at": self.clock().isoformat(),
            "resolved": False,
        }
        IDENTITY_RESOLUTIONS.labels("conflicted" if status == IdentityStatus.CONFLICTED else "review").inc()
        logger.warning("identity disagreement", extra={"nova_user_id": mapping.nova_user_id, "system": system, "status": status.value})
        return self.mappings.update(mapping.id, status=status, conflict_resolution=conflict, updated_at=self.clock())

    def _collision(self, owner: IdentityMapping, claimant: Optional[IdentityMapping], system, external_id, email,
                   canonical, connector_id, method) -> IdentityMapping:
        """The external id already belongs to a different canonical user: park both sides."""
        now = self.clock()
        if claimant is None:
            try:
                claimant = self.mappings.add(IdentityMapping(
                    email=email.strip(),
                    email_canonical=canonical,
                    external_mappings={},
                    sources={},
                    confidence=0.0,
                    status=IdentityStatus.CONFLICTED,
                    created_at=now,
                    updated_at=now,
                ))
            except DuplicateRecordError:
                claimant = self.mappings.find_one(IdentityMapping.email_canonical == canonical)
                if claimant is None:
                    raise
        conflict = {
            "kind": "external_id_collision",
            "system": system,
            "external_id": external_id,
            "candidates": [
                {"nova_user_id": owner.nova_user_id, "email_canonical": owner.email_canonical,
                 "source": (owner.sources or {}).get(system)},
                {"nova_user_id": claimant.nova_user_id, "email_canonical": claimant.email_canonical,
                 "source": self._source(connector_id, method)},
            ],
            "detected_at": now.isoformat(),
            "resolved": False,
        }
        self.mappings.update(owner.id, status=IdentityStatus.CONFLICTED, conflict_resolution=conflict, updated_at=now)
        claimant = self.mappings.update(claimant.id, status=IdentityStatus.CONFLICTED, conflict_resolution=conflict, updated_at=now)
        IDENTITY_RESOLUTIONS.labels("collision").inc()
        logger.warning("external id claimed by two identities", extra={"system": system, "owner": owner.nova_user_id, "claimant": claimant.nova_user_id})
        return claimant

    def resolve_conflict(self, nova_user_id: str, external_system: str, chosen_external_id: str,
                         resolved_by: str) -> IdentityMapping:
        """Operator decision: attach `chosen_external_id` to this identity and clear the conflict.

        Any other identity holding the same external id loses it.
        """
        mapping = self.get(nova_user_id)
        if mapping.status not in (IdentityStatus.CONFLICTED, IdentityStatus.PENDING_REVIEW) or not mapping.conflict_resolution:
            raise IdentityConflictError(f"identity {nova_user_id} has no open conflict")
        chosen = str(chosen_external_id)
        now = self.clock()
        with self._hold(mapping.email_canonical, external_system, chosen):
            other = self.lookup(external_system, chosen)
            if other is not None and other.id != mapping.id:
                rest = {k: v for k, v in (other.external_mappings or {}).items() if k != external_system}
                rest_sources = {k: v for k, v in (other.sources or {}).items() if k != external_system}
                conf = self.confidence_for(rest.keys())
                self.mappings.update(
                    other.id,
                    external_mappings=rest,
                    sources=rest_sources,
                    confidence=conf,
                    status=IdentityStatus.ACTIVE if conf >= self.promotion_threshold else IdentityStatus.PENDING_REVIEW,
                    conflict_resolution={**(other.conflict_resolution or {}), "resolved": True, "released_to": nova_user_id},
                    updated_at=now,
                )
            mappings = {**(mapping.external_mappings or {}), external_system: chosen}
            sources = {**(mapping.sources or {}), external_system: self._source(None, f"manual:{resolved_by}")}
            confidence = self.confidence_for(mappings.keys())
            status = IdentityStatus.ACTIVE if confidence >= self.promotion_threshold else IdentityStatus.PENDING_REVIEW
            resolution = {
                **mapping.conflict_resolution,
                "resolved": True,
                "resolved_by": resolved_by,
                "resolved_at": now.isoformat(),
                "chosen_external_id": chosen,
            }
            updated = self.mappings.update(
                mapping.id,
                external_mappings=mappings,
                sources=sources,
                confidence=confidence,
                status=status,
                conflict_resolution=resolution,
                last_verified_at=now,
                verification_method="manual",
                updated_at=now,
            )
        IDENTITY_RESOLUTIONS.labels("resolved").inc()
        logger.info("identity conflict resolved", extra={"nova_user_id": nova_user_id, "system": external_system, "by": resolved_by})
        return updated

    def merge(self, primary_id: str, secondary_id: str, merged_by: str, reason: str | None = None) -> IdentityMapping:
        """Operator merge: fold `secondary_id` into `primary_id`.

        External ids and sources the primary lacks move over. Systems where both carry a
        different id are parked on the primary as CONFLICTED for `resolve_conflict`.
        Confidence never drops. The secondary is left INACTIVE with a merged_into marker,
        and later resolutions of its email land on the primary.
        """
        if primary_id == secondary_id:
            raise InvalidConfigError("cannot merge an identity into itself")
        primary, secondary = self.get(primary_id), self.get(secondary_id)
        with self._locks.hold_many({primary.email_canonical, secondary.email_canonical}):
            primary, secondary = self.get(primary_id), self.get(secondary_id)
            if IdentityStatus.INACTIVE in (primary.status, secondary.status):
                raise IdentityConflictError(f"cannot merge inactive identity ({primary_id} <- {secondary_id})")
            now = self.clock()
            mappings = dict(primary.external_mappings or {})
            sources = dict(primary.sources or {})
            disagreements = []
            for system, external_id in (secondary.external_mappings or {}).items():
                current = mappings.get(system)
                if current is None:
                    mappings[system] = external_id
                    if system in (secondary.sources or {}):
                        sources[system] = secondary.sources[system]
                elif current != external_id:
                    disagreements.append({
                        "system": system,
                        "candidates": [
                            {"external_id": current, "nova_user_id": primary_id, "source": sources.get(system)},
                            {"external_id": external_id, "nova_user_id": secondary_id,
                             "source": (secondary.sources or {}).get(system)},
                        ],
                    })
            confidence = max(primary.confidence, secondary.confidence, self.confidence_for(mappings.keys()))
            audit = {"merged_from": secondary_id, "merged_by": merged_by, "reason": reason, "merged_at": now.isoformat()}
            values: Dict[str, Any] = {}
            if disagreements:
                values["status"] = IdentityStatus.CONFLICTED
                values["conflict_resolution"] = {
                    "kind": "merge_disagreement",
                    "system": disagreements[0]["system"],
                    "disagreements": disagreements,
                    "detected_at": now.isoformat(),
                    "resolved": False,
                    **audit,
                }
            elif not self._open_conflict(primary):
                values["status"] = self._promoted(primary.status, confidence)
            # the secondary gives up its ids first so lookups never see two owners
            self.mappings.update(
                secondary.id,
                external_mappings={},
                sources={},
                status=IdentityStatus.INACTIVE,
                conflict_resolution={
                    "merged_into": primary_id,
                    "external_mappings": dict(secondary.external_mappings or {}),
                    "previous_status": secondary.status.value,
                    "resolved": True,
                    **audit,
                },
                updated_at=now,
            )
            merged = self.mappings.update(
                primary.id,
                external_mappings=mappings,
                sources=sources,
                confidence=confidence,
                last_verified_at=now,
                verification_method=f"merge:{merged_by}",
                updated_at=now,
                **values,
            )
        IDENTITY_RESOLUTIONS.labels("profile_merged").inc()
        logger.info("identities merged", extra={"primary": primary_id, "secondary": secondary_id, "by": merged_by,
                                                "conflicts": len(disagreements)})
        return merged

    def deactivate(self, nova_user_id: str) -> IdentityMapping:
        m = self.get(nova_user_id)
        return self.mappings.update(m.id, status=IdentityStatus.INACTIVE, updated_at=self.clock())
