from conftest import TEST_USER_ID
from section_studio.db.base import SessionLocal
from section_studio.db.enums import GenerationRunStatusEnum
from section_studio.services.usage import DatabaseUsageRecorder, MonthlyQuotaChecker


def _record(recorder, status=GenerationRunStatusEnum.succeeded, user_id=TEST_USER_ID):
    recorder.record_generation(user_id=user_id, kind="upscale", model="gemini-test", cost=0.1, status=status)


def test_unlimited_quota_always_allows():
    assert MonthlyQuotaChecker(SessionLocal, None).check_allowed(TEST_USER_ID, "upscale", 1000).allowed


def test_quota_counts_this_months_billable_runs():
    recorder = DatabaseUsageRecorder(SessionLocal)
    _record(recorder)
    _record(recorder, status=GenerationRunStatusEnum.fallback)
    _record(recorder, status=GenerationRunStatusEnum.failed)
    _record(recorder, user_id="another_user")
    checker = MonthlyQuotaChecker(SessionLocal, 3)

    assert checker.check_allowed(TEST_USER_ID, "restyle", 1).allowed
    refused = checker.check_allowed(TEST_USER_ID, "restyle", 2)
    assert not refused.allowed
    assert "2/3" in refused.reason
