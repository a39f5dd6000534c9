"""
Tests for structured errors and logging.

This module tests the exception hierarchy, exception conversion, and the
structured, audit and operation logging helpers.
"""

import json
import logging
from datetime import datetime

import pytest

from portal_shared.exceptions import (
    ApiResponseError, AuthenticationError, ConfigurationError, CredentialStorageError,
    ErrorCode, ErrorSeverity, NetworkError, PortalClientError, RecoveryAction,
    ValidationError, handle_exception
)
from portal_shared.logging_config import (
    AuditLogger, DetailedFormatter, LogFormat, LogLevel, OperationLogger,
    StructuredFormatter, log_structured_error, setup_logging
)


class ListHandler(logging.Handler):
    """Collects records for inspection."""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    handler = ListHandler()
    loggers = [logging.getLogger(name) for name in ('audit', 'operations', 'test.errors')]
    for logger in loggers:
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
    yield handler
    for logger in loggers:
        logger.removeHandler(handler)


class TestStructuredExceptions:
    """Exception hierarchy and serialization."""

    def test_base_error_creation(self):
        error = PortalClientError(
            message="Test error message",
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            severity=ErrorSeverity.HIGH,
            context={'test_key': 'test_value'},
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.RECONNECT]
        )

        assert error.message == "Test error message"
        assert error.user_message == "Test error message"
        assert error.error_code == ErrorCode.NETWORK_CONNECTION_FAILED
        assert error.severity == ErrorSeverity.HIGH
        assert error.context['test_key'] == 'test_value'
        assert RecoveryAction.RECONNECT in error.recovery_actions
        assert isinstance(error.timestamp, datetime)

    def test_error_to_dict_conversion(self):
        cause = ConnectionRefusedError("refused")
        error = NetworkError("Connection failed", context={'host': 'portal.example.com'}, cause=cause)

        error_dict = error.to_dict()['error']

        assert error_dict['code'] == ErrorCode.NETWORK_CONNECTION_FAILED.value
        assert error_dict['severity'] == 'medium'
        assert error_dict['context']['host'] == 'portal.example.com'
        assert error_dict['cause'] == {'type': 'ConnectionRefusedError', 'message': 'refused'}
        assert 'retry_with_backoff' in error_dict['recovery_actions']

    def test_subclass_defaults(self):
        assert AuthenticationError("x").error_code == ErrorCode.AUTH_INVALID_TOKEN
        assert RecoveryAction.LOGIN_AGAIN in AuthenticationError("x").recovery_actions
        assert CredentialStorageError("x").error_code == ErrorCode.STORAGE_WRITE_FAILED
        assert ValidationError("x").severity == ErrorSeverity.LOW

    def test_api_response_error_keeps_status(self):
        error = ApiResponseError("Not found", status=404)

        assert error.status == 404
        assert error.context['status'] == 404
        assert error.error_code == ErrorCode.API_REQUEST_FAILED

    def test_validation_error_field(self):
        error = ValidationError("Email is required", field_name='email',
                                error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD)

        assert error.context['field_name'] == 'email'
        assert error.error_code == ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD

    def test_configuration_error_key(self):
        error = ConfigurationError("bad", ErrorCode.CONFIG_INVALID_VALUE, config_key='server.timeout')
        assert error.context['config_key'] == 'server.timeout'


class TestHandleException:
    """Conversion of generic exceptions."""

    @pytest.mark.parametrize('exception, error_class, error_code', [
        (ConnectionError("down"), NetworkError, ErrorCode.NETWORK_CONNECTION_FAILED),
        (TimeoutError("slow"), NetworkError, ErrorCode.NETWORK_TIMEOUT),
        (PermissionError("denied"), CredentialStorageError, ErrorCode.STORAGE_UNAVAILABLE),
        (ValueError("bad"), ValidationError, ErrorCode.VALIDATION_INVALID_INPUT),
    ])
    def test_mapped_exceptions(self, exception, error_class, error_code):
        converted = handle_exception(exception, context={'where': 'test'})

        assert isinstance(converted, error_class)
        assert converted.error_code == error_code
        assert converted.context['where'] == 'test'
        assert converted.cause is exception

    def test_unmapped_exception(self):
        converted = handle_exception(KeyError('missing'))

        assert type(converted) is PortalClientError
        assert converted.error_code == ErrorCode.INTERNAL_UNEXPECTED_ERROR

    def test_structured_error_passes_through(self):
        error = NetworkError("down")
        assert handle_exception(error) is error


class TestLogging:
    """Formatters and structured loggers."""

    def test_structured_formatter_includes_error(self):
        formatter = StructuredFormatter()
        error = AuthenticationError("Login failed", error_code=ErrorCode.AUTH_LOGIN_FAILED)
        record = logging.LogRecord('test', logging.ERROR, __file__, 10, "Login failed", None, None)
        record.error_info = error
        record.request_id = 'req-1'

        entry = json.loads(formatter.format(record))

        assert entry['level'] == 'ERROR'
        assert entry['message'] == 'Login failed'
        assert entry['error']['code'] == ErrorCode.AUTH_LOGIN_FAILED.value
        assert entry['error']['recovery_actions'] == ['login_again']
        assert entry['extra'] == {'request_id': 'req-1'}

    def test_detailed_formatter_includes_audit(self):
        formatter = DetailedFormatter()
        record = logging.LogRecord('audit', logging.INFO, __file__, 10, "Token refresh", None, None)
        record.audit_info = {'event_type': 'token_refresh', 'episode': 3}

        formatted = formatter.format(record)

        assert 'Token refresh' in formatted
        assert '"episode": 3' in formatted

    def test_audit_token_refresh(self, captured):
        AuditLogger().log_token_refresh(4, 'failure', reason='Refresh rejected with status 401')

        (record,) = captured.records
        assert record.audit_info['event_type'] == 'token_refresh'
        assert record.audit_info['episode'] == 4
        assert record.audit_info['context'] == {'reason': 'Refresh rejected with status 401'}

    def test_audit_session_ended(self, captured):
        AuditLogger().log_session_ended(2, 'No refresh token available', signalled=True)

        (record,) = captured.records
        assert record.audit_info['result'] == 'logged_out'
        assert record.audit_info['context']['login_signalled'] is True

    def test_audit_login_omits_password(self, captured):
        AuditLogger().log_authentication('admin@example.com', 'admin', success=False, failure_reason='Invalid credentials')

        (record,) = captured.records
        assert record.audit_info['context'] == {
            'email': 'admin@example.com', 'portal': 'admin', 'failure_reason': 'Invalid credentials'
        }
        assert record.audit_info['result'] == 'failure'

    def test_operation_logger_levels(self, captured):
        operations = OperationLogger()
        operations.log_operation_start('token_refresh', 'token-refresh-1')
        operations.log_operation_complete('token-refresh-1', success=False, duration_seconds=0.5,
                                          result_summary='timed out')

        start, complete = captured.records
        assert start.levelno == logging.DEBUG
        assert complete.levelno == logging.WARNING
        assert 'took 0.50s' in complete.getMessage()
        assert complete.operation_context['success'] is False

    def test_log_structured_error(self, captured):
        error = NetworkError("down")
        log_structured_error(logging.getLogger('test.errors'), error, level=logging.WARNING)

        (record,) = captured.records
        assert record.error_info is error
        assert record.levelno == logging.WARNING

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / 'logs' / 'client.log'
        root = logging.getLogger()
        previous_handlers, previous_level = root.handlers[:], root.level

        try:
            loggers = setup_logging(LogLevel.DEBUG, LogFormat.JSON, str(log_file), enable_console=False)
            loggers['client'].info("hello")
            for handler in root.handlers:
                handler.flush()

            line = log_file.read_text().strip().splitlines()[-1]
            assert json.loads(line)['message'] == 'hello'
            assert set(loggers) == {'root', 'client', 'audit', 'operations'}
        finally:
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)
            for handler in previous_handlers:
                root.addHandler(handler)
            root.setLevel(previous_level)
