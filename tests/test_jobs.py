import pytest

from tubeshelf.jobs import DownloadJob, JobStatus, VideoRequest


def test_status_groups():
    assert {s for s in JobStatus if s.is_active} == {JobStatus.QUEUED, JobStatus.DOWNLOADING}
    assert {s for s in JobStatus if s.is_terminal} == {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}


def test_from_request():
    request = VideoRequest('v1', 'Title', 'Channel', thumbnail='t.jpg', channel_id='UC1', group_name='Group')

    job = DownloadJob.from_request(request, enqueued_at=12.5, sequence=7)

    assert job.job_id == 'v1'
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0.0
    assert job.attempt == 0
    assert (job.thumbnail, job.channel_id, job.group_name) == ('t.jpg', 'UC1', 'Group')
    assert job.enqueued_at == 12.5
    assert job.sequence == 7


def test_to_record_is_plain_data():
    job = DownloadJob(job_id='v1', title='Title', status=JobStatus.ERROR, error='boom', sequence=3)

    record = job.to_record()

    assert record['status'] == 'error'
    assert record['error'] == 'boom'
    assert 'sequence' not in record


def test_from_record_fills_defaults_and_ignores_unknown_keys():
    job = DownloadJob.from_record({'job_id': 'v1', 'title': 'Title', 'legacy_field': True})

    assert job.status == JobStatus.QUEUED
    assert job.channel_name == ''
    assert job.progress == 0.0
    assert job.attempt == 0


@pytest.mark.parametrize('record, error', [
    ({'title': 'no id'}, KeyError),
    ({'job_id': 'v1'}, KeyError),
    ({'job_id': 'v1', 'title': 't', 'status': 'paused'}, ValueError),
    ({'job_id': 'v1', 'title': 't', 'progress': 'lots'}, ValueError),
])
def test_from_record_rejects_malformed_records(record, error):
    with pytest.raises(error):
        DownloadJob.from_record(record)
