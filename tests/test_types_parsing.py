import pytest

from gen_monitor.errors import ProtocolError
from gen_monitor.types import parse_job_status, parse_variants, unwrap_envelope


def test_envelope_unwrapped() -> None:
    assert unwrap_envelope({"success": True, "data": {"status": "running"}}) == {"status": "running"}
    assert unwrap_envelope({"status": "running"}) == {"status": "running"}


def test_failed_envelope_raises() -> None:
    with pytest.raises(ProtocolError, match="job not found"):
        unwrap_envelope({"success": False, "error": "job not found"})


def test_job_status_aliases() -> None:
    st = parse_job_status(
        {
            "success": True,
            "data": {
                "id": "job-1",
                "status": "DONE",
                "progress": 100,
                "result_variant_ids": ["v1", "v2"],
                "model_used": "sdxl",
            },
        }
    )
    assert st.status == "done"
    assert st.terminal
    assert st.result_ids == ["v1", "v2"]
    assert st.model == "sdxl"
    assert st.job_id == "job-1"


def test_result_ids_from_variant_records() -> None:
    st = parse_job_status({"status": "done", "result_variants": [{"id": "a"}, {"id": ""}, {"nope": 1}, {"id": "b"}]})
    assert st.result_ids == ["a", "b"]


def test_error_alias_and_progress_clamp() -> None:
    st = parse_job_status({"status": "failed", "error": "out of memory", "progress": 140})
    assert st.error_msg == "out of memory"
    assert st.progress == 100.0
    assert parse_job_status({"status": "running", "progress": -3}).progress == 0.0
    assert parse_job_status({"status": "running", "progress": "n/a"}).progress is None


def test_default_status_used_when_missing() -> None:
    assert parse_job_status({"progress": 10}, default_status="running").status == "running"
    with pytest.raises(ProtocolError):
        parse_job_status({"progress": 10})
    with pytest.raises(ProtocolError):
        parse_job_status(["not", "a", "dict"])


def test_parse_variants() -> None:
    vs = parse_variants(
        {
            "success": True,
            "data": [
                {"id": "v1", "job_id": "j", "score": "0.75", "image_id": "img", "thumb_path": "/t/v1.png", "meta_json": {"seed": 1}},
                {"id": "v2", "job_id": "j", "score": None},
                "garbage",
            ],
        }
    )
    assert [v.id for v in vs] == ["v1", "v2"]
    assert vs[0].score == 0.75
    assert vs[0].meta == {"seed": 1}
    assert vs[1].score == 0.0
    with pytest.raises(ProtocolError):
        parse_variants({"id": "v1"})
