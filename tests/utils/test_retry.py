"""
Tests for HTTP retry logic.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from hostengine.utils.retry import (
    RetryConfig,
    backoff_delay,
    request_with_retry,
    should_retry_exception,
)


class TestShouldRetryException:
    """Tests for should_retry_exception function."""

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503, 504])
    def test_retry_on_server_errors(self, status_code: int) -> None:
        """Test that rate limiting and server errors are retryable."""
        exc = requests.HTTPError(response=Mock(status_code=status_code))

        assert should_retry_exception(exc, RetryConfig()) is True

    @pytest.mark.parametrize("status_code", [400, 403, 404])
    def test_no_retry_on_client_errors(self, status_code: int) -> None:
        """Test that client errors are not retryable."""
        exc = requests.HTTPError(response=Mock(status_code=status_code))

        assert should_retry_exception(exc, RetryConfig()) is False

    def test_timeout_respects_config(self) -> None:
        """Test that timeouts are retried only when enabled."""
        assert should_retry_exception(requests.Timeout(), RetryConfig()) is True
        assert (
            should_retry_exception(requests.Timeout(), RetryConfig(retry_on_timeout=False))
            is False
        )

    def test_connection_error_respects_config(self) -> None:
        """Test that connection errors are retried only when enabled."""
        config = RetryConfig(retry_on_connection_error=False)

        assert should_retry_exception(requests.ConnectionError(), config) is False

    def test_other_errors_not_retried(self) -> None:
        """Test that unrelated exceptions are not retried."""
        assert should_retry_exception(ValueError("bad"), RetryConfig()) is False


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_exponential_delay(self) -> None:
        """Test that delays double per attempt."""
        config = RetryConfig(backoff_factor=2.0)

        assert [backoff_delay(config, n) for n in range(3)] == [2.0, 4.0, 8.0]


class TestRequestWithRetry:
    """Tests for request_with_retry."""

    @patch("hostengine.utils.retry.requests.get")
    def test_get_passes_params_and_timeout(self, mock_get: Mock) -> None:
        """Test that GET sends data as query parameters with the configured timeout."""
        response = Mock()
        mock_get.return_value = response

        result = request_with_retry(
            "GET", "https://catalog.example/apps/1", data={"a": "b"}, config=RetryConfig(request_timeout=3.0)
        )

        assert result is response
        mock_get.assert_called_once_with(
            "https://catalog.example/apps/1", params={"a": "b"}, timeout=3.0
        )
        response.raise_for_status.assert_called_once()

    @patch("hostengine.utils.retry.requests.post")
    def test_post_retries_on_503(self, mock_post: Mock) -> None:
        """Test that a failing status is retried through raise_for_status."""
        bad = Mock()
        bad.raise_for_status.side_effect = requests.HTTPError(response=Mock(status_code=503))
        good = Mock()
        mock_post.side_effect = [bad, good]

        result = request_with_retry(
            "POST", "https://hooks.example", json={"x": 1}, config=RetryConfig(backoff_factor=0.0)
        )

        assert result is good
        assert mock_post.call_count == 2

    def test_unsupported_method(self) -> None:
        """Test that unknown methods are rejected."""
        with pytest.raises(ValueError):
            request_with_retry("DELETE", "https://catalog.example")

    @patch("hostengine.utils.retry.requests.get")
    def test_retries_run_out(self, mock_get: Mock) -> None:
        """Test that the last connection error is raised after max_retries + 1 attempts."""
        mock_get.side_effect = requests.ConnectionError()

        with pytest.raises(requests.ConnectionError):
            request_with_retry(
                "GET", "https://catalog.example", config=RetryConfig(max_retries=2, backoff_factor=0.0)
            )
        assert mock_get.call_count == 3

    @patch("hostengine.utils.retry.requests.get")
    def test_client_error_not_retried(self, mock_get: Mock) -> None:
        """Test that a 404 is raised on the first attempt."""
        missing = Mock()
        missing.raise_for_status.side_effect = requests.HTTPError(response=Mock(status_code=404))
        mock_get.return_value = missing

        with pytest.raises(requests.HTTPError):
            request_with_retry("GET", "https://catalog.example", config=RetryConfig(backoff_factor=0.0))
        assert mock_get.call_count == 1
