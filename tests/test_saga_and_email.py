import asyncio

import pytest

from medgate.service.email import EmailDispatchError, EmailService
from medgate.service.saga import Saga


class TestSaga:
    def test_compensations_run_newest_first(self):
        calls = []
        saga = Saga("demo", tenant_id="HOSP0001")
        saga.add_compensation("first", calls.append, "first")
        saga.add_compensation("second", calls.append, "second")
        assert saga.compensate() == []
        assert calls == ["second", "first"]

    def test_failing_step_does_not_stop_the_rest(self):
        calls = []

        def _broken():
            raise RuntimeError("store offline")

        saga = Saga("demo")
        saga.add_compensation("first", calls.append, "first")
        saga.add_compensation("broken", _broken)
        assert saga.compensate() == ["broken"]
        assert calls == ["first"]

    def test_compensate_is_idempotent(self):
        calls = []
        saga = Saga("demo")
        saga.add_compensation("only", calls.append, 1)
        saga.compensate()
        saga.compensate()
        assert calls == [1]


class _SlowDispatcher:
    def __init__(self):
        self.calls = 0

    async def send(self, to_email, subject, html_body, text_body):
        self.calls += 1
        await asyncio.sleep(1)
        return "never"


class TestEmailService:
    async def test_dev_mode_logs_instead_of_sending(self, settings):
        service = EmailService(settings)
        assert not service.is_configured
        message_id = await service.send_verification_code(
            "admin@hospital.org", "123456", hospital_name="H", admin_name="A", expires_minutes=10
        )
        assert message_id.startswith("dev-")

    async def test_gives_up_after_max_attempts(self, settings, dispatcher):
        dispatcher.fail_always = True
        service = EmailService(settings, dispatcher=dispatcher)
        with pytest.raises(EmailDispatchError):
            await service.send("a@h.org", "s", "<p>h</p>", "t")

    async def test_slow_attempts_time_out(self, settings):
        slow = _SlowDispatcher()
        service = EmailService(
            settings.model_copy(update={"email_timeout_seconds": 0.01, "email_max_attempts": 2}),
            dispatcher=slow,
        )
        with pytest.raises(EmailDispatchError):
            await service.send("a@h.org", "s", "<p>h</p>", "t")
        assert slow.calls == 2

    async def test_overall_deadline_caps_retries(self, settings):
        slow = _SlowDispatcher()
        service = EmailService(
            settings.model_copy(
                update={
                    "email_timeout_seconds": 0.05,
                    "email_deadline_seconds": 0.08,
                    "email_max_attempts": 5,
                }
            ),
            dispatcher=slow,
        )
        started = asyncio.get_running_loop().time()
        with pytest.raises(EmailDispatchError):
            await service.send("a@h.org", "s", "<p>h</p>", "t")
        assert asyncio.get_running_loop().time() - started < 0.5
        assert slow.calls == 2

    def test_default_bounds_fit_the_deadline(self, settings):
        defaults = type(settings).model_fields
        per_attempt = defaults["email_timeout_seconds"].default
        attempts = defaults["email_max_attempts"].default
        assert per_attempt * attempts <= defaults["email_deadline_seconds"].default

    async def test_html_is_escaped(self, settings, dispatcher):
        service = EmailService(settings, dispatcher=dispatcher)
        await service.send_staff_invitation(
            "n@h.org",
            first_name="<script>",
            hospital_name="H",
            role="nurse",
            employee_id="NU0001",
            temporary_password="Ab1!xyzXYZ12",
        )
        message = dispatcher.last_to("n@h.org")
        assert "<script>" not in message["html"]
        assert "&lt;script&gt;" in message["html"]
        assert "Ab1!xyzXYZ12" in message["text"]
