import threading

import pytest

from integration_engine.engine.identity import IdentityResolver, canonicalize_email
from integration_engine.errors import IdentityConflictError, InvalidConfigError
from integration_engine.models.enums import IdentityStatus


@pytest.fixture()
def resolver(storage, clock):
    return IdentityResolver(storage, clock=clock, source_weights={"okta": 0.5, "workday": 0.5, "hr_master": 0.95},
                            default_weight=0.3, promotion_threshold=0.7, conflict_confidence=0.7)


class TestCanonicalEmail:
    @pytest.mark.parametrize("raw,expected", [
        ("  Alice@Example.COM ", "alice@example.com"),
        ("alice+billing@example.com", "alice@example.com"),
        ("J.Doe+x@GoogleMail.com", "jdoe@gmail.com"),
        ("j.doe@example.com", "j.doe@example.com"),
    ])
    def test_canonicalize(self, raw, expected):
        assert canonicalize_email(raw) == expected

    @pytest.mark.parametrize("raw", ["", "no-at-sign", "@example.com", "+tag@example.com"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(InvalidConfigError):
            canonicalize_email(raw)


class TestResolve:
    def test_new_mapping_waits_for_review(self, resolver):
        m = resolver.resolve("okta", "00u1", "alice@example.com")
        assert m.status == IdentityStatus.PENDING_REVIEW
        assert m.confidence == pytest.approx(0.5)
        assert m.external_mappings == {"okta": "00u1"}

    def test_corroboration_promotes(self, resolver):
        resolver.resolve("okta", "00u1", "alice@example.com")
        m = resolver.resolve("workday", "W-17", "Alice+hr@Example.com")
        assert m.confidence == pytest.approx(0.75)
        assert m.status == IdentityStatus.ACTIVE
        assert m.external_mappings == {"okta": "00u1", "workday": "W-17"}

    def test_trusted_source_promotes_immediately(self, resolver):
        m = resolver.resolve("hr_master", "E1", "carol@example.com")
        assert m.status == IdentityStatus.ACTIVE

    def test_repeat_report_never_lowers_confidence(self, resolver):
        resolver.resolve("okta", "00u1", "alice@example.com")
        first = resolver.resolve("workday", "W-17", "alice@example.com")
        again = resolver.resolve("okta", "00u1", "alice@example.com")
        assert again.confidence >= first.confidence
        assert 0.0 <= again.confidence <= 1.0

    def test_same_user_through_aliases(self, resolver):
        a = resolver.resolve("okta", "00u9", "j.doe@gmail.com")
        b = resolver.resolve("workday", "W-9", "JDoe+work@googlemail.com")
        assert a.nova_user_id == b.nova_user_id

    def test_lookup_and_external_id_for(self, resolver):
        m = resolver.resolve("okta", "00u1", "alice@example.com")
        assert resolver.lookup("okta", "00u1").nova_user_id == m.nova_user_id
        assert resolver.lookup("okta", "nope") is None
        assert resolver.external_id_for(m.nova_user_id, "okta") == "00u1"


class TestConflicts:
    def test_external_id_collision_conflicts_both(self, resolver):
        alice = resolver.resolve("okta", "00u1", "alice@example.com")
        bob = resolver.resolve("okta", "00u1", "bob@example.com")
        alice = resolver.get(alice.nova_user_id)
        assert alice.status == IdentityStatus.CONFLICTED
        assert bob.status == IdentityStatus.CONFLICTED
        emails = {c["email_canonical"] for c in bob.conflict_resolution["candidates"]}
        assert emails == {"alice@example.com", "bob@example.com"}
        # the existing owner keeps the external id until an operator decides
        assert alice.external_mappings == {"okta": "00u1"}

    def test_collision_waits_for_owner_lock(self, resolver):
        resolver.resolve("okta", "00u1", "alice@example.com")
        claimed = {}

        def claim():
            claimed["bob"] = resolver.resolve("okta", "00u1", "bob@example.com")

        with resolver._locks.hold("alice@example.com"):
            t = threading.Thread(target=claim)
            t.start()
            t.join(0.2)
            # held on the owner side
            assert t.is_alive()
        t.join(5)
        assert claimed["bob"].status == IdentityStatus.CONFLICTED

    def test_disagreement_with_confident_mapping_conflicts(self, resolver):
        resolver.resolve("okta", "00u1", "alice@example.com")
        resolver.resolve("workday", "W-17", "alice@example.com")
        m = resolver.resolve("okta", "00u2", "alice@example.com")
        assert m.status == IdentityStatus.CONFLICTED
        assert m.external_mappings["okta"] == "00u1"
        ids = [c["external_id"] for c in m.conflict_resolution["candidates"]]
        assert ids == ["00u1", "00u2"]

    def test_disagreement_with_weak_mapping_goes_to_review(self, resolver):
        resolver.resolve("okta", "00u1", "alice@example.com")
        m = resolver.resolve("okta", "00u2", "alice@example.com")
        assert m.status == IdentityStatus.PENDING_REVIEW
        assert m.external_mappings["okta"] == "00u1"
        assert m.conflict_resolution["kind"] == "external_id_mismatch"

    def test_resolve_conflict_moves_external_id(self, resolver):
        alice = resolver.resolve("okta", "00u1", "alice@example.com")
        bob = resolver.resolve("okta", "00u1", "bob@example.com")
        fixed = resolver.resolve_conflict(bob.nova_user_id, "okta", "00u1", resolved_by="admin")
        assert fixed.external_mappings == {"okta": "00u1"}
        assert fixed.conflict_resolution["resolved"] is True
        assert fixed.status == IdentityStatus.PENDING_REVIEW
        released = resolver.get(alice.nova_user_id)
        assert "okta" not in released.external_mappings
        assert resolver.lookup("okta", "00u1").nova_user_id == bob.nova_user_id

    def test_resolve_conflict_requires_open_conflict(self, resolver):
        m = resolver.resolve("hr_master", "E1", "carol@example.com")
        with pytest.raises(IdentityConflictError):
            resolver.resolve_conflict(m.nova_user_id, "hr_master", "E2", resolved_by="admin")

    def test_deactivate(self, resolver):
        m = resolver.resolve("okta", "00u9", "dave@example.com")
        assert resolver.deactivate(m.nova_user_id).status == IdentityStatus.INACTIVE


class TestMerge:
    def test_merge_folds_mappings_into_primary(self, resolver):
        primary = resolver.resolve("workday", "W-1", "alice@example.com")
        secondary = resolver.resolve("okta", "00u1", "alice.old@example.com")
        merged = resolver.merge(primary.nova_user_id, secondary.nova_user_id, merged_by="admin", reason="same person")
        assert merged.external_mappings == {"workday": "W-1", "okta": "00u1"}
        assert set(merged.sources) == {"workday", "okta"}
        assert merged.confidence == pytest.approx(0.75)
        assert merged.status == IdentityStatus.ACTIVE
        assert merged.verification_method == "merge:admin"

        folded = resolver.get(secondary.nova_user_id)
        assert folded.status == IdentityStatus.INACTIVE
        assert folded.external_mappings == {}
        assert folded.conflict_resolution["merged_into"] == primary.nova_user_id
        assert folded.conflict_resolution["external_mappings"] == {"okta": "00u1"}
        assert folded.conflict_resolution["reason"] == "same person"
        assert resolver.lookup("okta", "00u1").nova_user_id == primary.nova_user_id

    def test_merge_never_lowers_confidence(self, resolver):
        primary = resolver.resolve("hr_master", "E1", "carol@example.com")
        secondary = resolver.resolve("okta", "00u3", "carol.c@example.com")
        merged = resolver.merge(primary.nova_user_id, secondary.nova_user_id, merged_by="admin")
        assert merged.confidence >= primary.confidence
        assert merged.confidence <= 1.0

    def test_merge_disagreement_is_parked(self, resolver):
        primary = resolver.resolve("okta", "00u1", "alice@example.com")
        secondary = resolver.resolve("okta", "00u2", "alice.old@example.com")
        merged = resolver.merge(primary.nova_user_id, secondary.nova_user_id, merged_by="admin")
        assert merged.status == IdentityStatus.CONFLICTED
        assert merged.external_mappings == {"okta": "00u1"}
        assert merged.conflict_resolution["kind"] == "merge_disagreement"
        ids = [c["external_id"] for c in merged.conflict_resolution["disagreements"][0]["candidates"]]
        assert ids == ["00u1", "00u2"]

        fixed = resolver.resolve_conflict(primary.nova_user_id, "okta", "00u2", resolved_by="admin")
        assert fixed.external_mappings == {"okta": "00u2"}
        assert fixed.conflict_resolution["resolved"] is True

    def test_resolution_after_merge_lands_on_primary(self, resolver):
        primary = resolver.resolve("workday", "W-1", "alice@example.com")
        secondary = resolver.resolve("okta", "00u1", "alice.old@example.com")
        resolver.merge(primary.nova_user_id, secondary.nova_user_id, merged_by="admin")
        again = resolver.resolve("okta", "00u1", "alice.old@example.com")
        assert again.nova_user_id == primary.nova_user_id
        assert again.status == IdentityStatus.ACTIVE
        extra = resolver.resolve("hr_master", "E7", "alice.old@example.com")
        assert extra.nova_user_id == primary.nova_user_id
        assert resolver.get(secondary.nova_user_id).external_mappings == {}

    def test_merge_rejects_self_and_inactive(self, resolver):
        a = resolver.resolve("okta", "00u1", "alice@example.com")
        b = resolver.resolve("workday", "W-2", "bob@example.com")
        with pytest.raises(InvalidConfigError):
            resolver.merge(a.nova_user_id, a.nova_user_id, merged_by="admin")
        resolver.merge(a.nova_user_id, b.nova_user_id, merged_by="admin")
        with pytest.raises(IdentityConflictError):
            resolver.merge(a.nova_user_id, b.nova_user_id, merged_by="admin")
