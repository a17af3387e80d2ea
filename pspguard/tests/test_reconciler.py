"""
Tests for reconciler.py - lifecycle hooks and the convergence algorithm.

Every test drives the reconciler against a FakeCluster.
"""

import pytest

from pspguard import reconciler as reconciler_module
from pspguard.baseline import qualify
from pspguard.errors import ApplyError, ClusterUnreachableError, ConfigurationError
from pspguard.models import ClusterIdentity, PolicyManifest, ReconciliationInputs
from pspguard.reconciler import PodSecurityPolicyReconciler
from pspguard.tests.fakes import KUBECONFIG, FakeCluster, make_manifest


@pytest.fixture
def managed_baseline(monkeypatch):
    """Pretend the identity's provider mandates p-managed."""
    monkeypatch.setattr(
        reconciler_module,
        "baseline_policies",
        lambda identity: [qualify("p-managed")],
    )


def _reconciler(cluster, *names, identity="local"):
    manifests = [make_manifest(name) for name in names]
    return PodSecurityPolicyReconciler(identity, client=cluster, manifests=manifests)


def test_scenario_create_applies_then_deletes_extraneous(managed_baseline):
    """Old policies go, required ones are applied, baseline is left alone."""
    cluster = FakeCluster(live={qualify("p-old")})
    rec = _reconciler(cluster, "p-restrictive")

    result = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert cluster.mutations() == [
        ("apply", "p-restrictive.yaml"),
        ("delete", qualify("p-old")),
    ]
    assert result.outs.required_psps == [qualify("p-restrictive")]
    assert result.outs.required_cloud_psps == [qualify("p-managed")]
    assert result.report.deleted == [qualify("p-old")]
    assert not result.report.degraded


def test_baseline_policy_is_never_deleted(managed_baseline):
    """A live baseline policy survives even though no manifest declares it."""
    cluster = FakeCluster(live={qualify("p-managed"), qualify("p-old")})
    rec = _reconciler(cluster, "p-restrictive")

    rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert ("delete", qualify("p-managed")) not in cluster.calls
    assert qualify("p-managed") in cluster.live


def test_all_applies_complete_before_any_delete():
    """No delete may be issued before the last apply."""
    live = {qualify(f"stale-{i}") for i in range(3)}
    cluster = FakeCluster(live=live)
    rec = _reconciler(cluster, "a", "b", "c")

    rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    kinds = [call[0] for call in cluster.mutations()]
    assert kinds == ["apply"] * 3 + ["delete"] * 3
    # Apply order follows manifest order.
    assert [c[1] for c in cluster.calls if c[0] == "apply"] == ["a.yaml", "b.yaml", "c.yaml"]


def test_listing_happens_before_applies():
    """Extraneous set is computed from the cluster as it was before applying."""
    cluster = FakeCluster(live={qualify("old")})
    rec = _reconciler(cluster, "new")

    rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert cluster.calls[0] == ("list", None)


def test_empty_name_sentinel_is_skipped():
    """A blank listing line never turns into a delete."""
    cluster = FakeCluster(live={"", qualify("old")})
    rec = _reconciler(cluster, "new")

    rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert ("delete", "") not in cluster.calls


def test_unprefixed_name_from_listing_is_deleted_after_applies():
    """Listing decides scope: a name in another API group's form is still removed."""
    cluster = FakeCluster(live={"podsecuritypolicy.extensions/old"})
    rec = _reconciler(cluster, "a", "b")

    result = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert cluster.mutations() == [
        ("apply", "a.yaml"),
        ("apply", "b.yaml"),
        ("delete", "podsecuritypolicy.extensions/old"),
    ]
    assert result.report.deleted == ["podsecuritypolicy.extensions/old"]


def test_diff_reports_no_changes_when_converged(managed_baseline):
    """Live state already covers desired state: no changes, no mutations."""
    cluster = FakeCluster(
        live={qualify("p-restrictive"), qualify("p-managed"), qualify("p-extra")}
    )
    rec = _reconciler(cluster, "p-restrictive")
    state = ReconciliationInputs(kubeconfig=KUBECONFIG)

    result = rec.diff("abc", state, state)

    assert result.changes is False
    assert result.missing == []
    assert cluster.mutations() == []


def test_diff_reports_missing_policies(managed_baseline):
    cluster = FakeCluster(live={qualify("p-restrictive")})
    rec = _reconciler(cluster, "p-restrictive")
    state = ReconciliationInputs(kubeconfig=KUBECONFIG)

    result = rec.diff("abc", state, state)

    assert result.changes is True
    assert result.missing == [qualify("p-managed")]


def test_diff_uses_prior_state_credentials():
    cluster = FakeCluster()
    rec = _reconciler(cluster, "p")

    rec.diff(
        "abc",
        ReconciliationInputs(kubeconfig="prior"),
        ReconciliationInputs(kubeconfig="requested"),
    )

    assert cluster.kubeconfigs == ["prior"]


@pytest.mark.parametrize("operation", ["create", "update", "diff"])
def test_unreachable_cluster_is_fatal_with_no_mutations(operation):
    """Reader failures propagate and nothing is applied or deleted."""
    cluster = FakeCluster(fail_list=True)
    rec = _reconciler(cluster, "p")
    state = ReconciliationInputs(kubeconfig=KUBECONFIG)

    with pytest.raises(ClusterUnreachableError):
        if operation == "create":
            rec.create(state)
        elif operation == "update":
            rec.update("abc", state, state)
        else:
            rec.diff("abc", state, state)

    assert cluster.mutations() == []


def test_failed_delete_does_not_stop_other_deletes():
    """One stubborn policy leaves the cycle degraded, not failed."""
    cluster = FakeCluster(
        live={qualify("stale-a"), qualify("stale-b")},
        fail_deletes={qualify("stale-a")},
    )
    rec = _reconciler(cluster, "p")

    result = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert ("delete", qualify("stale-b")) in cluster.calls
    assert result.report.deleted == [qualify("stale-b")]
    assert result.report.failed_deletes == {qualify("stale-a"): "forbidden"}
    assert result.report.degraded


def test_apply_error_aborts_before_deletes():
    """A rejected manifest is fatal; earlier applies stay, no deletes run."""
    cluster = FakeCluster(live={qualify("stale")}, fail_apply={"b.yaml"})
    rec = _reconciler(cluster, "a", "b")

    with pytest.raises(ApplyError):
        rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert cluster.mutations() == [("apply", "a.yaml"), ("apply", "b.yaml")]
    assert qualify("a") in cluster.live


def test_manifest_without_policy_fails_before_cluster_contact():
    cluster = FakeCluster()
    broken = PolicyManifest(source="rbac.yaml", text="kind: ClusterRole\nmetadata:\n  name: x\n")
    rec = PodSecurityPolicyReconciler("local", client=cluster, manifests=[broken])

    with pytest.raises(ConfigurationError):
        rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert cluster.calls == []


def test_create_resets_accumulators_without_touching_inputs():
    """Stale lists in the inputs are overwritten, and the caller's object is untouched."""
    cluster = FakeCluster()
    rec = _reconciler(cluster, "p")
    inputs = ReconciliationInputs(
        kubeconfig=KUBECONFIG,
        required_psps=["stale"],
        required_cloud_psps=["stale-cloud"],
    )

    result = rec.create(inputs)

    assert result.outs.required_psps == [qualify("p")]
    assert result.outs.required_cloud_psps == []
    assert inputs.required_psps == ["stale"]


def test_update_overwrites_rather_than_appends():
    cluster = FakeCluster()
    rec = _reconciler(cluster, "p")
    created = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    first = rec.update(created.id, created.outs, created.outs)
    second = rec.update(created.id, first.outs, first.outs)

    assert second.outs.required_psps == [qualify("p")]


def test_update_uses_prior_state_not_requested_inputs():
    cluster = FakeCluster()
    rec = _reconciler(cluster, "p")

    rec.update(
        "abc",
        ReconciliationInputs(kubeconfig="prior"),
        ReconciliationInputs(kubeconfig="requested"),
    )

    assert cluster.kubeconfigs == ["prior"]


def test_second_update_without_drift_deletes_nothing():
    cluster = FakeCluster(live={qualify("stale")})
    rec = _reconciler(cluster, "p")
    created = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))
    rec.update(created.id, created.outs)

    cluster.calls.clear()
    result = rec.update(created.id, created.outs)

    assert [c for c in cluster.calls if c[0] == "delete"] == []
    assert result.report.deleted == []
    assert rec.diff(created.id, result.outs).changes is False


def test_delete_then_create_reproduces_desired_state():
    cluster = FakeCluster()
    rec = _reconciler(cluster, "p", "q")
    first = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    rec.delete(first.id, first.outs)
    assert cluster.live == set()

    second = rec.create(ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert set(second.outs.required()) == set(first.outs.required())
    assert cluster.live == {qualify("p"), qualify("q")}
    assert second.id != first.id
    assert len(second.id) == 16


def test_teardown_is_best_effort():
    cluster = FakeCluster(fail_deletes={"a.yaml"})
    rec = _reconciler(cluster, "a", "b")

    report = rec.delete("abc", ReconciliationInputs(kubeconfig=KUBECONFIG))

    assert [c[0] for c in cluster.calls] == ["delete_manifest", "delete_manifest"]
    assert report.deleted == ["b.yaml"]
    assert report.failed == {"a.yaml": "forbidden"}
    assert report.degraded


def test_check_flags_empty_kubeconfig():
    rec = _reconciler(FakeCluster(), "p")

    assert rec.check(None, ReconciliationInputs(kubeconfig="  ")).failures
    assert rec.check(None, ReconciliationInputs(kubeconfig=KUBECONFIG)).failures == []


@pytest.mark.parametrize("identity", list(ClusterIdentity))
def test_desired_state_contains_baseline_for_every_identity(identity):
    """Real manifests plus real baseline table: baseline names are never dropped."""
    from pspguard.baseline import baseline_policies

    rec = PodSecurityPolicyReconciler(identity, client=FakeCluster())

    assert set(baseline_policies(identity)) <= rec.desired_policy_names()


@pytest.mark.parametrize("identity", ["GKE", "Eks", "on-prem-lab", ""])
def test_unknown_identity_is_rejected_before_cluster_contact(identity):
    """An unrecognized tag would have no baseline, so it must not reach convergence."""
    cluster = FakeCluster(live={qualify("gce.privileged")})

    with pytest.raises(ConfigurationError, match="Unknown cluster identity"):
        PodSecurityPolicyReconciler(identity, client=cluster)

    assert cluster.calls == []


def test_identity_accepts_enum_members():
    rec = PodSecurityPolicyReconciler(ClusterIdentity.gke, client=FakeCluster())

    assert rec.identity == "gke"
    assert qualify("gce.privileged") in rec.desired_policy_names()
