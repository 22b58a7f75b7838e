import logging
import threading

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from ecs_manage.utils.clock import Deadline
from ecs_manage.utils.errors import (
    CredentialError,
    EcsManageError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    PlatformRejectedError,
    PlatformUnavailableError,
    RollbackFailedError,
    error_handler,
)
from ecs_manage.utils.logging import LogContext, get_logger
from ecs_manage.utils.retry import RetryStrategy


def client_error(code, status=400, operation="UpdateService"):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status, "RequestId": "req-1"},
        },
        operation,
    )


# ---------------------------------------------------------------------
# Error handler
# ---------------------------------------------------------------------

@pytest.mark.parametrize("code,status", [
    ("ThrottlingException", 400),
    ("ServerException", 500),
    ("SomethingNew", 503),
])
def test_transient_client_errors_are_unavailable(code, status):
    error = error_handler.handle_exception(client_error(code, status))

    assert isinstance(error, PlatformUnavailableError)
    assert error.retryable
    assert error.context.error_code == code
    assert error.context.request_id == "req-1"


def test_client_exception_is_rejected():
    error = error_handler.handle_exception(client_error("InvalidParameterException"))

    assert isinstance(error, PlatformRejectedError)
    assert not error.retryable
    assert error.category == ErrorCategory.SPEC
    assert error.message.startswith("Invalid parameter value")
    assert error.suggestions


def test_access_denied_is_a_credential_rejection():
    error = error_handler.handle_exception(client_error("AccessDeniedException"))

    assert isinstance(error, PlatformRejectedError)
    assert error.category == ErrorCategory.CREDENTIAL


def test_network_errors_are_unavailable():
    error = error_handler.handle_exception(
        EndpointConnectionError(endpoint_url="https://ecs.us-east-1.amazonaws.com")
    )

    assert isinstance(error, PlatformUnavailableError)
    assert error.category == ErrorCategory.NETWORK


def test_missing_credentials():
    error = error_handler.handle_exception(NoCredentialsError())

    assert isinstance(error, CredentialError)
    assert error.severity == ErrorSeverity.CRITICAL


def test_known_errors_pass_through():
    original = RollbackFailedError("rollback failed")

    assert error_handler.handle_exception(original) is original


def test_unknown_errors_are_wrapped():
    cause = KeyError("web")

    error = error_handler.handle_exception(cause, ErrorContext(service="prod/web"))

    assert type(error) is EcsManageError
    assert error.cause is cause
    assert error.context.service == "prod/web"


def test_user_message_and_dict():
    error = RollbackFailedError(
        "rollback failed: no previous revision",
        context=ErrorContext(service="prod/web", operation="rollback"),
        suggestions=["Restore the service by hand"],
    )

    message = error.to_user_message()
    assert message.startswith("ESCALATED: rollback failed")
    assert "Service: prod/web" in message
    assert "1. Restore the service by hand" in message

    data = error.to_dict()
    assert data["kind"] == "RollbackFailed"
    assert data["severity"] == "escalated"
    assert data["context"]["operation"] == "rollback"


# ---------------------------------------------------------------------
# Retry strategy
# ---------------------------------------------------------------------

def flaky(failures, result="ok"):
    calls = []

    def func():
        calls.append(1)
        if len(calls) <= len(failures):
            raise failures[len(calls) - 1]
        return result

    return func, calls


def test_retries_transient_errors_with_backoff(clock):
    strategy = RetryStrategy(max_retries=3, base_delay=1.0, jitter=False, clock=clock)
    func, calls = flaky([client_error("ThrottlingException"), PlatformUnavailableError("busy")])

    assert strategy.execute_with_retry(func) == "ok"
    assert len(calls) == 3
    assert clock.sleeps == [1.0, 2.0]


def test_does_not_retry_rejections(clock):
    strategy = RetryStrategy(max_retries=3, jitter=False, clock=clock)
    func, calls = flaky([client_error("InvalidParameterException")])

    with pytest.raises(PlatformRejectedError) as exc:
        strategy.execute_with_retry(func)

    assert isinstance(exc.value.__cause__, ClientError)
    assert len(calls) == 1
    assert clock.sleeps == []


def test_gives_up_after_max_retries(clock):
    strategy = RetryStrategy(max_retries=2, base_delay=1.0, jitter=False, clock=clock)
    func, calls = flaky([PlatformUnavailableError("busy")] * 5)

    with pytest.raises(PlatformUnavailableError):
        strategy.execute_with_retry(func)

    assert len(calls) == 3


def test_delay_is_capped():
    strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)

    assert [strategy.get_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_adds_at_most_ten_percent():
    strategy = RetryStrategy(base_delay=10.0, jitter=True)

    for _ in range(20):
        assert 10.0 <= strategy.get_delay(0) <= 11.0


def test_expired_deadline_stops_retrying(clock):
    deadline = Deadline(clock, 1.5)
    strategy = RetryStrategy(max_retries=5, base_delay=1.0, jitter=False, clock=clock).with_deadline(deadline)
    func, calls = flaky([PlatformUnavailableError("busy")] * 5)

    with pytest.raises(PlatformUnavailableError):
        strategy.execute_with_retry(func)

    assert len(calls) == 3
    assert clock.sleeps == [1.0, 0.5]


# ---------------------------------------------------------------------
# Logging context
# ---------------------------------------------------------------------

def test_log_context_is_per_thread(caplog):
    logger = get_logger("ecs_manage.tests")
    seen = {}

    def worker(name):
        with LogContext(service=name):
            logger.warning(f"working on {name}")

    with caplog.at_level(logging.WARNING, logger="ecs_manage.tests"):
        threads = [threading.Thread(target=worker, args=(n,)) for n in ("prod/web", "prod/api")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        logger.warning("outside")

    for record in caplog.records:
        seen[record.getMessage()] = getattr(record, "service", None)

    assert seen == {
        "working on prod/web": "prod/web",
        "working on prod/api": "prod/api",
        "outside": None,
    }
