import threading

import pytest

from shellrunner.errors import (
    AuditWriteFailure,
    InvalidParameters,
    RemoteCommandError,
    RemoteExecutionError,
    SessionResetError,
    SessionUnavailable,
    UnknownAction,
)
from shellrunner.executor import JobExecutor
from shellrunner.models import AuditStatus, Credentials, Job
from shellrunner.session import SessionManager
from shellrunner.storage import AuditStore


@pytest.fixture
def audits():
    store = AuditStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def sessions(remote):
    return SessionManager(remote.factory, connect_retries=2, retry_delay=0)


@pytest.fixture
def executor(sessions, audits):
    return JobExecutor(sessions, audits)


def statuses(audits, job_id):
    return [r.status for r in audits.list_for_job(job_id)]


def test_successful_job_is_audited_started_then_completed(executor, audits, remote):
    remote.output = '{"Name": "contoso", "IsDehydrated": false}\n'
    job = Job(action="Get-OrgConfig")

    result = executor.run(job)

    assert result.data == {"Name": "contoso", "IsDehydrated": False}
    assert result.output == remote.output
    assert result.duration_ms >= 0
    records = audits.list_for_job(job.id)
    assert [r.status for r in records] == [AuditStatus.started, AuditStatus.completed]
    assert records[0].timestamp <= records[1].timestamp
    assert records[0].action == "Get-OrgConfig"
    assert '"output_chars"' in records[1].details
    assert remote.commands == ["Get-OrganizationConfig | ConvertTo-Json -Depth 4 -Compress"]


def test_non_json_output_leaves_data_empty(executor, remote):
    remote.output = "not json\n"
    assert executor.run(Job(action="Get-OrganizationConfig")).data is None
    assert executor.run(Job(action="Invoke-Script", params={"command": "'[1]'"})).data is None


def test_unknown_action_fails_fast_without_session_work(executor, audits, remote):
    job = Job(action="Remove-Everything")

    with pytest.raises(UnknownAction):
        executor.run(job)

    assert statuses(audits, job.id) == [AuditStatus.started, AuditStatus.failed]
    assert audits.list_for_job(job.id)[1].details.startswith("UnknownAction:")
    assert remote.connects == 0


def test_invalid_params_fail_fast(executor, audits, remote):
    job = Job(action="Get-Mailbox", params={"Identity": {"bad": 1}})
    with pytest.raises(InvalidParameters):
        executor.run(job)
    assert statuses(audits, job.id) == [AuditStatus.started, AuditStatus.failed]
    assert remote.connects == 0


def test_session_unavailable_is_terminal_and_audited(executor, audits, remote):
    remote.connect_failures = 10
    job = Job(action="Get-OrganizationConfig")

    with pytest.raises(SessionUnavailable):
        executor.run(job)

    assert statuses(audits, job.id) == [AuditStatus.started, AuditStatus.failed]
    assert remote.connects == 2


def test_remote_error_is_audited_with_class_name(executor, audits, remote):
    remote.failures["Get-Mailbox"] = RemoteCommandError("Couldn't find object")
    job = Job(action="Get-Mailbox", params={"Identity": "nobody"})

    with pytest.raises(RemoteExecutionError):
        executor.run(job)

    failed = audits.list_for_job(job.id)[-1]
    assert failed.status == AuditStatus.failed
    assert failed.details == "RemoteExecutionError: Couldn't find object"


def test_credentials_reach_the_session_but_not_the_audit(executor, audits, remote):
    creds = Credentials(token="secret-token", organization="contoso.onmicrosoft.com", user_upn="admin@contoso.com")
    job = Job(action="Get-OrganizationConfig", credentials=creds)

    executor.run(job)

    assert remote.connect_credentials == [creds]
    for record in audits.list_for_job(job.id):
        assert "secret-token" not in record.details
    assert "secret-token" not in repr(job)


class FailingAuditStore(AuditStore):
    def append(self, *args, **kwargs):
        raise AuditWriteFailure("disk full")


def test_audit_failure_never_blocks_the_result(sessions, remote):
    store = FailingAuditStore(":memory:")
    try:
        result = JobExecutor(sessions, store).run(Job(action="Invoke-Script", params={"command": "Get-Date"}))
    finally:
        store.close()
    assert result.output == remote.output


def test_concurrent_jobs_never_overlap_on_the_session(executor, audits, remote):
    remote.delay = 0.02
    jobs = [Job(action="Get-OrgConfig") for _ in range(8)]
    errors = []

    def run(job):
        try:
            executor.run(job)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(job,)) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert remote.max_active == 1
    for job in jobs:
        records = audits.list_for_job(job.id)
        assert [r.status for r in records] == [AuditStatus.started, AuditStatus.completed]
        assert records[0].timestamp <= records[1].timestamp


def test_reset_mid_job_still_produces_terminal_audit(executor, audits, sessions, remote):
    gate = threading.Event()
    remote.gate = gate
    job = Job(action="Invoke-Script", params={"command": "Start-Sleep 5"})
    errors = []

    def run():
        try:
            executor.run(job)
        except Exception as e:
            errors.append(e)

    t = threading.Thread(target=run)
    t.start()
    assert remote.started.wait(5)

    sessions.reset()
    assert sessions.peek()["status"] == "idle"
    assert statuses(audits, job.id) == [AuditStatus.started]

    gate.set()
    t.join(5)
    assert isinstance(errors[0], SessionResetError)
    assert statuses(audits, job.id) == [AuditStatus.started, AuditStatus.failed]


def test_oversized_integer_is_audited_and_fails_fast(executor, audits, remote):
    job = Job(action="Get-Mailbox", params={"ResultSize": 2 ** 70})

    with pytest.raises(InvalidParameters):
        executor.run(job)

    records = audits.list_for_job(job.id)
    assert [r.status for r in records] == [AuditStatus.started, AuditStatus.failed]
    assert str(2 ** 70) in records[0].details
    assert records[1].details.startswith("InvalidParameters:")
    assert remote.connects == 0


def test_started_audit_survives_unencodable_params(executor, audits):
    job = Job(action="Invoke-Script", params={"command": "Get-Date", "meta": {"n": 2 ** 70}})

    executor.run(job)

    records = audits.list_for_job(job.id)
    assert [r.status for r in records] == [AuditStatus.started, AuditStatus.completed]
    assert "Get-Date" in records[0].details
