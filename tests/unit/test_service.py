"""Tests for the control plane operations and their ledger writes."""

import pytest

from flowgate.config import FlowgateConfig, JobsConfig
from flowgate.contracts import BuildPhase, BuildState, EntityRef, EntityType, HistoryStatus
from flowgate.errors import BuildUrlNotAllowedError, ConfigurationError
from flowgate.persistence import InMemoryHistoryRepository
from flowgate.pipelines import PipelineCatalog
from flowgate.service import ControlPlane, HistorySync, build_control_plane
from flowgate.sources import CredentialInventory, InMemoryCredentialIndex

from conftest import BASE, approval_state

JOBS = JobsConfig(dev_to_git="to-git", deploy_from_git="deploy", promote_credentials="promote")
WORKFLOW = EntityRef(type=EntityType.WORKFLOW, id="42", name="Invoice sync")
CREDS = EntityRef(type=EntityType.CREDENTIAL, id="7")


class StaticWorkflows:
    async def get_workflow(self, workflow_id):
        return {"id": workflow_id, "nodes": [{"credentials": {"slackApi": {"id": "c1"}}}]}


def plane(build_server, repo, production_ids=()):
    inventory = CredentialInventory(StaticWorkflows(), InMemoryCredentialIndex(production_ids))
    return ControlPlane(build_server, PipelineCatalog(JOBS, inventory), repo)


async def rows(repo, entity=WORKFLOW):
    return [r for r in repo._rows if r.entity_id == entity.id]


@pytest.mark.asyncio
async def test_successful_pipeline_writes_running_then_success(build_server):
    repo = InMemoryHistoryRepository()

    outcome = await plane(build_server, repo, ["c1"]).trigger_pipeline("push-to-prod", WORKFLOW)

    assert outcome.status is HistoryStatus.SUCCESS
    history = await rows(repo)
    assert [r.status for r in history] == [HistoryStatus.RUNNING, HistoryStatus.SUCCESS]
    assert all(r.action == "PUSH_TO_PROD" for r in history)
    assert history[0].metadata["stages"] == ["DEV_TO_GIT", "DEPLOY_FROM_GIT"]
    assert history[1].build_url == outcome.build_url
    assert history[1].details == "PUSH_TO_PROD success"
    assert len(history[1].metadata["steps"]) == 2
    assert history[1].entity_name == "Invoice sync"


@pytest.mark.asyncio
async def test_failed_stage_is_recorded_as_failed(build_server):
    repo = InMemoryHistoryRepository()
    build_server.script("promote", BuildPhase.FAILURE)

    outcome = await plane(build_server, repo).trigger_pipeline("push-to-prod", WORKFLOW)

    assert outcome.status is HistoryStatus.FAILED
    assert [t[0] for t in build_server.triggered] == ["promote"]
    final = (await rows(repo))[-1]
    assert final.status is HistoryStatus.FAILED
    assert final.details == "PUSH_TO_PROD failed: PROMOTE_CREDS finished with FAILURE"
    assert final.metadata["error"] == outcome.error


@pytest.mark.asyncio
async def test_approval_pause_is_recorded_with_build_url(build_server):
    repo = InMemoryHistoryRepository()
    build_server.script("deploy", "approval")

    outcome = await plane(build_server, repo, ["c1"]).trigger_pipeline("pull-from-git", WORKFLOW)

    assert outcome.status is HistoryStatus.AWAITING_APPROVAL
    final = (await rows(repo))[-1]
    assert final.status is HistoryStatus.AWAITING_APPROVAL
    assert final.build_url == outcome.steps[-1].build_url
    assert "DEPLOY_FROM_GIT" in final.details

    summary = await plane(build_server, repo).get_history_summary()
    assert [e.entity_id for e in summary.approvals] == ["42"]


@pytest.mark.asyncio
async def test_push_to_prod_waits_through_credential_approval(build_server):
    repo = InMemoryHistoryRepository()
    build_server.script("promote", "gated")

    outcome = await plane(build_server, repo).trigger_pipeline("push-to-prod", WORKFLOW)

    assert outcome.status is HistoryStatus.SUCCESS
    assert [t[0] for t in build_server.triggered] == ["promote", "to-git", "deploy"]
    assert build_server.waited[0][1] is False
    assert (await rows(repo))[-1].build_url == f"{BASE}/job/deploy/3/"


@pytest.mark.asyncio
async def test_standalone_credential_promotion_stops_at_approval(build_server):
    repo = InMemoryHistoryRepository()
    build_server.script("promote", "gated")

    outcome = await plane(build_server, repo).trigger_pipeline("promote-credentials", CREDS, {"ids": "7"})

    assert outcome.status is HistoryStatus.AWAITING_APPROVAL
    assert outcome.approval.input_page_url == f"{BASE}/job/promote/1/input/"


@pytest.mark.asyncio
async def test_credential_pipeline_records_ids(build_server):
    repo = InMemoryHistoryRepository()

    await plane(build_server, repo).trigger_pipeline("promote-credentials", CREDS, {"ids": "7,8"})

    history = await rows(repo, CREDS)
    assert history[0].entity_type is EntityType.CREDENTIAL
    assert all(r.metadata["ids"] == ["7", "8"] for r in history)
    assert build_server.triggered == [("promote", {"CRED_IDS": "7,8"})]


@pytest.mark.asyncio
async def test_planning_error_writes_nothing(build_server):
    repo = InMemoryHistoryRepository()
    control = ControlPlane(build_server, PipelineCatalog(JobsConfig()), repo)

    with pytest.raises(ConfigurationError):
        await control.trigger_pipeline("push-to-git", WORKFLOW)
    with pytest.raises(ValueError):
        await control.trigger_pipeline("push-everywhere", WORKFLOW)
    assert repo._rows == []


@pytest.mark.asyncio
async def test_internal_error_is_recorded_and_reraised(build_server):
    repo = InMemoryHistoryRepository()
    build_server.script("to-git", RuntimeError("bug"))

    with pytest.raises(RuntimeError):
        await plane(build_server, repo).trigger_pipeline("push-to-git", WORKFLOW)

    final = (await rows(repo))[-1]
    assert final.status is HistoryStatus.FAILED
    assert final.details == "PUSH_TO_GIT failed: internal error"
    assert "bug" not in str(final.metadata)


@pytest.mark.asyncio
async def test_build_state_rejects_foreign_host(build_server):
    control = plane(build_server, InMemoryHistoryRepository())

    with pytest.raises(BuildUrlNotAllowedError):
        await control.get_build_state("https://evil.example.net/job/x/1/")
    with pytest.raises(BuildUrlNotAllowedError):
        await control.respond_to_approval("file:///etc/passwd")


@pytest.mark.asyncio
async def test_build_state_syncs_terminal_result_once(build_server):
    repo = InMemoryHistoryRepository()
    build_url = f"{BASE}/job/deploy/3/"
    build_server.states[build_url] = BuildState(phase=BuildPhase.SUCCESS)
    control = plane(build_server, repo)
    sync = HistorySync(entity=WORKFLOW, action="DEPLOY_FROM_GIT")

    state = await control.get_build_state(f"{BASE}/job/deploy/3", sync)
    await control.get_build_state(build_url, sync)

    assert state.phase is BuildPhase.SUCCESS
    history = await rows(repo)
    assert len(history) == 1
    assert history[0].status is HistoryStatus.SUCCESS
    assert history[0].build_url == build_url
    assert history[0].metadata["source"] == "build-status-poller"


@pytest.mark.asyncio
async def test_build_state_does_not_sync_running_builds(build_server):
    repo = InMemoryHistoryRepository()
    build_url = f"{BASE}/job/deploy/4/"
    build_server.states[build_url] = BuildState(phase=BuildPhase.BUILDING)

    await plane(build_server, repo).get_build_state(
        build_url, HistorySync(entity=WORKFLOW, action="DEPLOY_FROM_GIT")
    )
    assert repo._rows == []


@pytest.mark.asyncio
async def test_build_state_sync_records_failure_for_credentials(build_server):
    repo = InMemoryHistoryRepository()
    build_url = f"{BASE}/job/promote/5/"
    build_server.states[build_url] = BuildState(phase=BuildPhase.ABORTED)

    await plane(build_server, repo).get_build_state(
        build_url, HistorySync(entity=CREDS, action="PROMOTE_CREDENTIALS", ids=["7", "8"])
    )

    row = (await rows(repo, CREDS))[0]
    assert row.status is HistoryStatus.FAILED
    assert row.details == "PROMOTE_CREDENTIALS failed: ABORTED"
    assert row.metadata["ids"] == ["7", "8"]


@pytest.mark.asyncio
async def test_respond_to_approval_answers_paused_build(build_server):
    build_url = f"{BASE}/job/deploy/6/"
    build_server.states[build_url] = approval_state(build_url)

    await plane(build_server, InMemoryHistoryRepository()).respond_to_approval(build_url, proceed=False)

    assert build_server.responses == [("Gate", False)]


@pytest.mark.asyncio
async def test_respond_to_approval_ignores_build_that_is_not_paused(build_server):
    build_url = f"{BASE}/job/deploy/7/"
    build_server.states[build_url] = BuildState(phase=BuildPhase.SUCCESS)

    state = await plane(build_server, InMemoryHistoryRepository()).respond_to_approval(build_url)

    assert state.phase is BuildPhase.SUCCESS
    assert build_server.responses == []


@pytest.mark.asyncio
async def test_history_summary_filter_and_latest(build_server):
    repo = InMemoryHistoryRepository()
    control = plane(build_server, repo, ["c1"])
    build_server.script("to-git", BuildPhase.FAILURE)
    await control.trigger_pipeline("push-to-git", WORKFLOW)

    summary = await control.get_history_summary(status_filter="failed")
    latest = await control.latest_history(EntityType.WORKFLOW, ["42"], "PUSH_TO_GIT")

    assert summary.window_days == 7
    assert summary.counts["FAILED"] == 1
    assert latest["42"].status is HistoryStatus.FAILED


@pytest.mark.asyncio
async def test_aclose_closes_client_and_resources(build_server):
    class Resource:
        closed = False

        async def aclose(self):
            self.closed = True

    resource = Resource()
    control = ControlPlane(
        build_server, PipelineCatalog(JOBS), InMemoryHistoryRepository(), resources=[resource]
    )
    await control.aclose()

    assert build_server.closed
    assert resource.closed


@pytest.mark.asyncio
async def test_build_control_plane_without_inventory():
    config = FlowgateConfig(jobs=JOBS)
    repo = InMemoryHistoryRepository()

    control = build_control_plane(config, repo)
    try:
        with pytest.raises(ConfigurationError):
            await control.catalog.plan("push-to-prod", "42")
        assert (await control.catalog.plan("push-to-git", "42"))[0].job_path == "to-git"
    finally:
        await control.aclose()


@pytest.mark.asyncio
async def test_history_summary_honours_zero_day_window(build_server):
    repo = InMemoryHistoryRepository()
    control = plane(build_server, repo, ["c1"])
    await control.trigger_pipeline("push-to-git", WORKFLOW)

    summary = await control.get_history_summary(window_days=0)

    assert summary.window_days == 0
    assert sum(summary.counts.values()) == 0
