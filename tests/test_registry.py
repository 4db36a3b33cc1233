import pytest

from tubeshelf.jobs import CompletedEvent, ErrorEvent, JobStatus, ProgressEvent
from tubeshelf.registry import JobRegistry

from .conftest import FakeClock, video


@pytest.fixture
def registry(clock):
    return JobRegistry(clock=clock)


@pytest.fixture
def notifications(registry):
    calls = []
    registry.add_listener(lambda job_id, state_changed: calls.append((job_id, state_changed)))
    return calls


def admit(registry, job_id):
    job = registry.mark_downloading(job_id)
    assert job is not None
    return job.attempt


def test_enqueue_creates_queued_job(registry, clock, notifications):
    assert registry.enqueue(video('v1', group_name='Music'))

    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0.0
    assert job.enqueued_at == clock.now
    assert job.group_name == 'Music'
    assert notifications == [('v1', True)]


def test_double_enqueue_keeps_a_single_job(registry):
    assert registry.enqueue(video('v1'))
    assert not registry.enqueue(video('v1'))
    assert len(registry) == 1


def test_enqueue_rejected_while_downloading(registry):
    registry.enqueue(video('v1'))
    admit(registry, 'v1')
    assert not registry.enqueue(video('v1'))
    assert registry.get('v1').status == JobStatus.DOWNLOADING


def test_batch_deduplicates_within_the_batch(registry, notifications):
    added = registry.enqueue_batch([video('v1'), video('v2'), video('v1')])

    assert added == 2
    assert sorted(job.job_id for job in registry.jobs()) == ['v1', 'v2']
    assert notifications == [(None, True)]


def test_batch_skips_active_ids(registry):
    registry.enqueue(video('v1'))
    assert registry.enqueue_batch([video('v1'), video('v2')]) == 1


def test_enqueue_replaces_terminal_job(registry, clock):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    registry.apply_error(ErrorEvent('v1', attempt, 'failed'))
    clock.advance(30)

    assert registry.enqueue(video('v1', title='New title'))
    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.title == 'New title'
    assert job.error is None
    assert job.enqueued_at == clock.now


def test_next_queued_is_fifo_with_stable_ties(registry, clock):
    registry.enqueue(video('b'))
    registry.enqueue(video('a'))  # same timestamp, enqueued second
    clock.advance(1)
    registry.enqueue(video('c'))

    assert registry.next_queued().job_id == 'b'
    admit(registry, 'b')
    assert registry.next_queued().job_id == 'a'


def test_mark_downloading_only_from_queued(registry):
    registry.enqueue(video('v1'))
    assert admit(registry, 'v1') == 1
    assert registry.mark_downloading('v1') is None
    assert registry.mark_downloading('missing') is None


def test_progress_updates_without_state_change(registry, notifications):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    notifications.clear()

    assert registry.apply_progress(ProgressEvent('v1', attempt, 42.5, '1.0MiB/s', '00:10'))
    job = registry.get('v1')
    assert (job.progress, job.speed, job.eta) == (42.5, '1.0MiB/s', '00:10')
    assert notifications == [('v1', False)]


def test_completed_sets_full_progress(registry):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    registry.apply_progress(ProgressEvent('v1', attempt, 80.0))

    assert registry.apply_completed(CompletedEvent('v1', attempt, '/out/v1.mp4'))
    job = registry.get('v1')
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100.0
    assert job.output_path == '/out/v1.mp4'


def test_error_resets_progress_and_keeps_message(registry):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    registry.apply_progress(ProgressEvent('v1', attempt, 55.0))

    assert registry.apply_error(ErrorEvent('v1', attempt, 'ERROR: unable to download'))
    job = registry.get('v1')
    assert job.status == JobStatus.ERROR
    assert job.progress == 0.0
    assert 'unable to download' in job.error


def test_cancelled_job_ignores_late_events(registry):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    assert registry.cancel('v1')

    assert not registry.apply_error(ErrorEvent('v1', attempt, 'killed'))
    assert not registry.apply_completed(CompletedEvent('v1', attempt, '/out'))
    assert not registry.apply_progress(ProgressEvent('v1', attempt, 99.0))
    assert registry.get('v1').status == JobStatus.CANCELLED


def test_cancelled_is_final(registry):
    registry.enqueue(video('v1'))
    registry.cancel('v1')

    assert not registry.retry('v1')
    assert not registry.redownload('v1')
    assert not registry.cancel('v1')
    assert registry.mark_downloading('v1') is None


def test_events_from_a_previous_attempt_are_ignored(registry):
    registry.enqueue(video('v1'))
    first = admit(registry, 'v1')
    registry.apply_error(ErrorEvent('v1', first, 'first failure'))
    registry.retry('v1')
    second = admit(registry, 'v1')

    assert second == first + 1
    assert not registry.apply_completed(CompletedEvent('v1', first, '/stale'))
    assert registry.get('v1').status == JobStatus.DOWNLOADING


def test_events_for_unknown_jobs_are_ignored(registry):
    assert not registry.apply_progress(ProgressEvent('ghost', 1, 10.0))


def test_retry_keeps_fifo_position(registry, clock):
    registry.enqueue(video('v1'))
    original = registry.get('v1').enqueued_at
    attempt = admit(registry, 'v1')
    registry.apply_error(ErrorEvent('v1', attempt, 'boom'))
    clock.advance(10)
    registry.enqueue(video('v2'))

    assert registry.retry('v1')
    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.error is None
    assert job.enqueued_at == original
    assert registry.next_queued().job_id == 'v1'


def test_retry_only_applies_to_failed_jobs(registry):
    registry.enqueue(video('v1'))
    assert not registry.retry('v1')
    assert not registry.retry('missing')


def test_retry_all_failed_requeues_behind_waiting_jobs(registry, clock):
    registry.enqueue_batch([video('v1'), video('v2')])
    for job_id in ('v1', 'v2'):
        registry.apply_error(ErrorEvent(job_id, admit(registry, job_id), 'boom'))
    clock.advance(5)
    registry.enqueue(video('v3'))
    clock.advance(5)

    assert registry.retry_all_failed() == 2
    assert registry.get('v1').enqueued_at == clock.now
    assert registry.next_queued().job_id == 'v3'


def test_redownload_completed_job(registry, clock):
    registry.enqueue(video('v1'))
    attempt = admit(registry, 'v1')
    registry.apply_completed(CompletedEvent('v1', attempt, '/out'))
    clock.advance(100)

    assert registry.redownload('v1')
    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.output_path is None
    assert job.progress == 0.0
    assert job.enqueued_at == clock.now


def test_cancel_all_returns_active_ids(registry):
    registry.enqueue_batch([video('v1'), video('v2'), video('v3')])
    admit(registry, 'v1')
    registry.apply_completed(CompletedEvent('v1', 1, '/out'))
    admit(registry, 'v2')

    assert sorted(registry.cancel_all()) == ['v2', 'v3']
    assert registry.get('v1').status == JobStatus.COMPLETED


def test_clear_history_keeps_active_jobs(registry):
    registry.enqueue_batch([video('v1'), video('v2'), video('v3'), video('v4')])
    registry.apply_completed(CompletedEvent('v1', admit(registry, 'v1'), '/out'))
    registry.apply_error(ErrorEvent('v2', admit(registry, 'v2'), 'boom'))
    registry.cancel('v3')

    assert registry.clear_history() == 3
    assert [job.job_id for job in registry.jobs()] == ['v4']


def test_remove(registry):
    registry.enqueue(video('v1'))
    assert registry.remove('v1').job_id == 'v1'
    assert registry.remove('v1') is None
    assert 'v1' not in registry


def test_restore_downgrades_interrupted_downloads(registry):
    records = [
        {'job_id': 'v1', 'title': 'One', 'status': 'downloading', 'progress': 63.0, 'speed': '2MiB/s', 'enqueued_at': 20.0, 'attempt': 2},
        {'job_id': 'v2', 'title': 'Two', 'status': 'queued', 'enqueued_at': 10.0},
        {'job_id': 'v3', 'title': 'Three', 'status': 'completed', 'progress': 100.0, 'enqueued_at': 5.0},
    ]

    assert registry.restore(records) == 3
    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0.0
    assert job.speed is None
    assert job.attempt == 2
    assert registry.next_queued().job_id == 'v2'
    assert registry.get('v3').status == JobStatus.COMPLETED


def test_restore_skips_malformed_and_existing_records(registry):
    registry.enqueue(video('v1', title='Live'))
    records = [
        {'job_id': 'v1', 'title': 'Persisted', 'status': 'error'},
        {'title': 'no id'},
        {'job_id': 'v2', 'title': 'Bad status', 'status': 'paused'},
        {'job_id': 'v3', 'title': 'Fine', 'status': 'cancelled'},
    ]

    assert registry.restore(records) == 1
    assert registry.get('v1').title == 'Live'
    assert 'v2' not in registry
    assert registry.get('v3').status == JobStatus.CANCELLED


def test_import_history_only_takes_finished_jobs(registry):
    records = [
        {'job_id': 'v1', 'title': 'Done', 'status': 'completed', 'output_path': '/out/v1.mp4'},
        {'job_id': 'v2', 'title': 'Waiting', 'status': 'queued'},
    ]

    assert registry.import_history(records) == 1
    assert registry.get('v1').output_path == '/out/v1.mp4'
    assert 'v2' not in registry


def test_snapshot_round_trips_through_records():
    source = JobRegistry(clock=FakeClock(50.0))
    source.enqueue(video('v1', thumbnail='thumb.jpg', channel_id='UC1'))

    target = JobRegistry()
    target.restore(source.snapshot())
    assert target.get('v1') == source.get('v1')


def test_reenqueue_after_cancel_continues_the_attempt_count(registry):
    registry.enqueue(video('v1'))
    first = admit(registry, 'v1')
    registry.cancel('v1')

    assert registry.enqueue(video('v1'))
    second = admit(registry, 'v1')

    assert second > first
    assert not registry.apply_error(ErrorEvent('v1', first, 'exited with code -15'))
    assert registry.get('v1').status == JobStatus.DOWNLOADING


def test_reenqueue_after_remove_continues_the_attempt_count(registry):
    registry.enqueue(video('v1'))
    first = admit(registry, 'v1')
    registry.remove('v1')

    registry.enqueue(video('v1'))
    second = admit(registry, 'v1')

    assert second > first
    assert not registry.apply_completed(CompletedEvent('v1', first, '/stale'))
    assert registry.apply_completed(CompletedEvent('v1', second, '/out'))


def test_requeue_interrupted_keeps_fifo_position(registry, clock, notifications):
    registry.enqueue(video('v1'))
    clock.advance(1)
    registry.enqueue(video('v2'))
    attempt = admit(registry, 'v1')
    registry.apply_progress(ProgressEvent('v1', attempt, 40.0))
    notifications.clear()

    assert registry.requeue_interrupted() == 1
    job = registry.get('v1')
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0.0
    assert registry.next_queued().job_id == 'v1'
    assert admit(registry, 'v1') == attempt + 1
    assert notifications[0] == (None, True)


def test_requeue_commands_follow_the_transition_table(registry):
    registry.enqueue(video('v1'))
    assert not registry.can_transition('v1', JobStatus.COMPLETED)
    assert not registry.redownload('v1')

    attempt = admit(registry, 'v1')
    assert not registry.redownload('v1')
    registry.apply_completed(CompletedEvent('v1', attempt, '/out'))

    assert registry.can_transition('v1', JobStatus.QUEUED)
    assert not registry.retry('v1')
    assert registry.retry_all_failed() == 0
    assert registry.redownload('v1')
    assert not registry.can_transition('missing', JobStatus.QUEUED)
