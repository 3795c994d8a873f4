"""
Tests for the Manifest Model and the Manifest Trust Evaluator

Covers the two-level trust chain:
- Root keys must authorize the release key set (root threshold)
- Authorized release keys must sign the manifest (release threshold)
- Unknown, revoked, expired, invalid and duplicate signatures never count
- Revocation and expiry are judged at evaluation time
- Keys may not act in both roles
"""

import copy
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import widget_artifact
from trustship.core.exceptions import ManifestFormatError, ManifestTrustError
from trustship.trust import (
    ExclusionReason,
    Keyring,
    KeyRole,
    LocalKeyPair,
    ManifestTrustEvaluator,
    ReleaseManifest,
    TrustRoot,
    TrustVerdict,
    canonical_digest,
)


def evaluate(document, keyring, now=None):
    return ManifestTrustEvaluator().evaluate(ReleaseManifest.from_document(document), keyring, now=now)


def reasons(evaluation, level):
    return [e.reason for e in evaluation.exclusions if e.level == level]


class TestManifestModel:
    """Parsing and schema validation."""

    def test_parse_widget_manifest(self, make_manifest, release_key):
        manifest = ReleaseManifest.from_document(make_manifest())

        assert manifest.product == "widget"
        assert manifest.version == "1.0.0"
        assert [a.name for a in manifest.artifacts] == ["widget-1.0.0.pkg"]
        assert manifest.release_keys.threshold == 1
        assert [k.key_id for k in manifest.release_keys.keys] == [release_key.key_id]
        assert manifest.digest == canonical_digest(manifest.signed_body)

    def test_digest_prefix_accepted(self, make_manifest):
        document = make_manifest()
        digest = document["signed"]["artifacts"][0]["sha256"]
        document["signed"]["artifacts"][0]["sha256"] = f"sha256:{digest}"

        manifest = ReleaseManifest.from_document(document)

        assert manifest.artifacts[0].sha256 == digest

    def test_missing_field(self, make_manifest):
        document = make_manifest()
        del document["signed"]["version"]

        with pytest.raises(ManifestFormatError):
            ReleaseManifest.from_document(document)

    def test_bad_artifact_size(self, make_manifest):
        document = make_manifest()
        document["signed"]["artifacts"][0]["size"] = 1.5

        with pytest.raises(ManifestFormatError) as exc_info:
            ReleaseManifest.from_document(document)

        assert "artifacts" in exc_info.value.path

    def test_path_traversal_artifact_name(self, make_manifest):
        document = make_manifest(artifacts=[widget_artifact(name="../evil")])

        with pytest.raises(ManifestFormatError):
            ReleaseManifest.from_document(document)

    def test_duplicate_artifact_names(self, make_manifest):
        document = make_manifest(artifacts=[widget_artifact(), widget_artifact()])

        with pytest.raises(ManifestFormatError):
            ReleaseManifest.from_document(document)

    def test_invalid_json(self):
        with pytest.raises(ManifestFormatError):
            ReleaseManifest.from_json(b"{not json")

    def test_document_round_trip(self, make_manifest):
        document = make_manifest()

        assert ReleaseManifest.from_document(document).to_document() == document


class TestWidgetScenarios:
    """The two reference scenarios for widget 1.0.0."""

    def test_two_of_three_root_one_of_one_release_is_trusted(self, make_manifest, keyring, root_keys, release_key):
        evaluation = evaluate(make_manifest(root_signers=root_keys[:2]), keyring)

        assert evaluation.verdict is TrustVerdict.TRUSTED
        assert evaluation.trusted
        assert sorted(evaluation.root_signers) == sorted(k.key_id for k in root_keys[:2])
        assert evaluation.release_signers == [release_key.key_id]
        assert evaluation.release_threshold == 1
        assert evaluation.exclusions == []

    def test_revoked_release_key_fails_release_threshold(self, make_manifest, keyring, release_key):
        document = make_manifest()
        keyring.record_revocations([release_key.key_id])

        evaluation = evaluate(document, keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(evaluation, "release") == [ExclusionReason.REVOKED]

    def test_revoked_in_trust_root_configuration(self, make_manifest, root_keys, release_key):
        trust_root = TrustRoot.from_keys(
            [k.public for k in root_keys],
            root_threshold=2,
            revoked_keys=[release_key.key_id],
        )

        evaluation = evaluate(make_manifest(), Keyring(trust_root))

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET


class TestRootQuorum:
    """Level 1: root keys authorize the release key set."""

    def test_single_root_signature_insufficient(self, make_manifest, keyring, root_keys):
        evaluation = evaluate(make_manifest(root_signers=root_keys[:1]), keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert evaluation.release_signers == []

    def test_all_three_root_signatures(self, make_manifest, keyring, root_keys):
        evaluation = evaluate(make_manifest(root_signers=root_keys), keyring)

        assert evaluation.trusted
        assert len(evaluation.root_signers) == 3

    def test_duplicate_root_signer_counted_once(self, make_manifest, keyring, root_keys):
        evaluation = evaluate(make_manifest(root_signers=[root_keys[0], root_keys[0]]), keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert evaluation.root_signers == [root_keys[0].key_id]
        assert reasons(evaluation, "root") == [ExclusionReason.DUPLICATE_SIGNER]

    def test_unknown_root_signer_excluded(self, make_manifest, keyring, root_keys):
        stranger = LocalKeyPair.generate(KeyRole.ROOT)

        evaluation = evaluate(make_manifest(root_signers=[root_keys[0], stranger]), keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert reasons(evaluation, "root") == [ExclusionReason.UNKNOWN_KEY]

    def test_revoked_root_key_excluded(self, make_manifest, keyring, root_keys):
        keyring.record_revocations([root_keys[1].key_id])

        evaluation = evaluate(make_manifest(root_signers=root_keys[:2]), keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert reasons(evaluation, "root") == [ExclusionReason.REVOKED]

    def test_revoked_root_key_replaced_by_third(self, make_manifest, keyring, root_keys):
        keyring.record_revocations([root_keys[1].key_id])

        evaluation = evaluate(make_manifest(root_signers=root_keys), keyring)

        assert evaluation.trusted
        assert root_keys[1].key_id not in evaluation.root_signers

    def test_tampered_key_set_invalidates_root_signatures(self, make_manifest, keyring):
        document = make_manifest()
        intruder = LocalKeyPair.generate(KeyRole.RELEASE)
        document["signed"]["release_keys"]["signed"]["keys"].append(intruder.public.to_record())

        evaluation = evaluate(document, keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert set(reasons(evaluation, "root")) == {ExclusionReason.INVALID_SIGNATURE}


class TestReleaseQuorum:
    """Level 2: authorized release keys sign the manifest."""

    def test_tampered_manifest_invalidates_release_signature(self, make_manifest, keyring):
        document = make_manifest()
        document["signed"]["artifacts"][0]["size"] += 1

        evaluation = evaluate(document, keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(evaluation, "release") == [ExclusionReason.INVALID_SIGNATURE]

    def test_unauthorized_release_signer(self, make_manifest, keyring):
        outsider = LocalKeyPair.generate(KeyRole.RELEASE)

        evaluation = evaluate(make_manifest(release_signers=[outsider]), keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(evaluation, "release") == [ExclusionReason.UNKNOWN_KEY]

    def test_key_set_threshold_enforced(self, make_manifest, keyring, release_key):
        second = LocalKeyPair.generate(KeyRole.RELEASE)
        authorized = [release_key, second]

        one = evaluate(
            make_manifest(authorized=authorized, release_threshold=2, release_signers=[release_key]),
            keyring,
        )
        two = evaluate(
            make_manifest(authorized=authorized, release_threshold=2, release_signers=authorized),
            keyring,
        )

        assert one.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert one.release_threshold == 2
        assert two.trusted

    def test_configured_floor_raises_threshold(self, make_manifest, root_keys, release_key):
        trust_root = TrustRoot.from_keys([k.public for k in root_keys], root_threshold=2, release_threshold=2)

        evaluation = evaluate(make_manifest(release_threshold=1), Keyring(trust_root))

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert evaluation.release_threshold == 2

    def test_duplicate_release_signer_counted_once(self, make_manifest, keyring, release_key):
        second = LocalKeyPair.generate(KeyRole.RELEASE)

        evaluation = evaluate(
            make_manifest(
                authorized=[release_key, second],
                release_threshold=2,
                release_signers=[release_key, release_key],
            ),
            keyring,
        )

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(evaluation, "release") == [ExclusionReason.DUPLICATE_SIGNER]

    def test_key_set_revokes_its_own_release_key(self, make_manifest, keyring, release_key):
        evaluation = evaluate(make_manifest(revoked=[release_key.key_id]), keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert keyring.is_revoked(release_key.key_id)

    def test_revocations_from_unverified_key_set_ignored(self, make_manifest, keyring, root_keys, release_key):
        evaluation = evaluate(make_manifest(root_signers=root_keys[:1], revoked=["ab" * 32]), keyring)

        assert evaluation.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET
        assert not keyring.is_revoked("ab" * 32)

    def test_unsupported_algorithm_excluded(self, make_manifest, keyring, release_key):
        exotic = replace(release_key.public, algorithm="ed448-shake256")

        evaluation = evaluate(make_manifest(authorized=[exotic]), keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(evaluation, "release") == [ExclusionReason.UNSUPPORTED_ALGORITHM]


class TestEvaluationTime:
    """Expiry and revocation are judged when evaluating, not when signing."""

    def test_expiry_flips_verdict(self, make_manifest, keyring):
        expiry = datetime(2027, 1, 1, tzinfo=timezone.utc)
        expiring = LocalKeyPair.generate(KeyRole.RELEASE, expiry=expiry)
        document = make_manifest(authorized=[expiring], release_signers=[expiring])

        before = evaluate(document, keyring, now=expiry - timedelta(minutes=1))
        after = evaluate(document, keyring, now=expiry)

        assert before.trusted
        assert after.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert reasons(after, "release") == [ExclusionReason.EXPIRED]

    def test_expired_root_key(self, make_manifest, root_keys, release_key):
        expiry = datetime(2027, 1, 1, tzinfo=timezone.utc)
        expiring_root = LocalKeyPair.generate(KeyRole.ROOT, expiry=expiry)
        trust_root = TrustRoot.from_keys(
            [root_keys[0].public, expiring_root.public],
            root_threshold=2,
        )
        document = make_manifest(root_signers=[root_keys[0], expiring_root])

        assert evaluate(document, Keyring(trust_root), now=expiry - timedelta(days=1)).trusted
        late = evaluate(document, Keyring(trust_root), now=expiry + timedelta(days=1))
        assert late.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET

    def test_naive_evaluation_time_is_utc(self, make_manifest, keyring):
        expiring = LocalKeyPair.generate(KeyRole.RELEASE, expiry=datetime(2030, 1, 1, tzinfo=timezone.utc))
        document = make_manifest(authorized=[expiring], release_signers=[expiring])

        early = evaluate(document, keyring, now=datetime(2029, 1, 1))
        late = evaluate(document, keyring, now=datetime(2030, 1, 1))

        assert early.trusted
        assert early.evaluated_at.tzinfo is not None
        assert reasons(late, "release") == [ExclusionReason.EXPIRED]

    def test_revocation_after_signing(self, make_manifest, keyring, release_key):
        document = make_manifest()
        assert evaluate(document, keyring).trusted

        keyring.record_revocations([release_key.key_id])

        assert evaluate(document, keyring).verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET


class TestCrossRoleReuse:
    """A key holds exactly one role."""

    def test_root_key_in_release_set_is_rejected(self, make_manifest, keyring, root_keys):
        # The same key material relabelled as a release key.
        relabelled = replace(root_keys[2].public, role=KeyRole.RELEASE)
        document = make_manifest(authorized=[relabelled], release_signers=[root_keys[2]])

        evaluation = evaluate(document, keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert evaluation.authorized_release_keys == []
        assert ExclusionReason.ROLE_CONFLICT in reasons(evaluation, "release")

    def test_root_role_entry_in_release_set_is_rejected(self, make_manifest, keyring):
        rogue = LocalKeyPair.generate(KeyRole.ROOT)

        evaluation = evaluate(make_manifest(authorized=[rogue], release_signers=[rogue]), keyring)

        assert evaluation.verdict is TrustVerdict.RELEASE_THRESHOLD_NOT_MET
        assert ExclusionReason.ROLE_CONFLICT in reasons(evaluation, "release")


class TestVerdictReporting:

    def test_raise_for_verdict(self, make_manifest, keyring, root_keys):
        evaluation = evaluate(make_manifest(root_signers=root_keys[:1]), keyring)

        with pytest.raises(ManifestTrustError) as exc_info:
            evaluation.raise_for_verdict()

        assert exc_info.value.code == "TRUST.ROOT_THRESHOLD_NOT_MET"
        assert exc_info.value.evaluation["root_threshold"] == 2

    def test_trusted_does_not_raise(self, make_manifest, keyring):
        evaluate(make_manifest(), keyring).raise_for_verdict()

    def test_to_dict(self, make_manifest, keyring, root_keys):
        document = make_manifest(root_signers=[root_keys[0], root_keys[0]])

        data = evaluate(document, keyring).to_dict()

        assert data["verdict"] == "ROOT_THRESHOLD_NOT_MET"
        assert data["exclusions"][0]["reason"] == "duplicate_signer"
        assert data["product"] == "widget"

    def test_evaluation_does_not_mutate_document(self, make_manifest, keyring):
        document = make_manifest()
        snapshot = copy.deepcopy(document)

        evaluate(document, keyring)

        assert document == snapshot
