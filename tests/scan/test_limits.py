"""Tests for provider range-limit classification."""

import pytest

from escrow_token_discovery.scan.limits import DEFAULT_RANGE_LIMIT_SIGNATURES, RangeLimitClassifier


class TestRangeLimitClassifier:
    @pytest.mark.parametrize(
        "message",
        [
            "Log response size exceeded. You can make eth_getLogs requests with up to a 2K block range",
            "query exceeds max block range 100000",
            "query returned more than 10000 results",
            "eth_getLogs block range is too large, max is 1k blocks",
            "413 Request Entity Too Large",
        ],
    )
    def test_known_provider_messages(self, message: str) -> None:
        assert RangeLimitClassifier().is_range_limit(Exception(message))

    def test_unrelated_errors_are_not_range_limits(self) -> None:
        classifier = RangeLimitClassifier()
        assert not classifier.is_range_limit(Exception("execution reverted"))
        assert not classifier.is_range_limit(TimeoutError())

    def test_reads_message_from_rpc_payload(self) -> None:
        error = ValueError({"code": -32005, "message": "Query returned more than 10000 results"})
        assert RangeLimitClassifier().is_range_limit(error)

    def test_with_signatures_extends_without_mutating(self) -> None:
        base = RangeLimitClassifier()
        extended = base.with_signatures(["Too Many Blocks Requested", "query exceeds max block range"])

        error = Exception("too many blocks requested")
        assert extended.is_range_limit(error)
        assert not base.is_range_limit(error)
        assert extended.signatures.count("query exceeds max block range") == 1
        assert len(extended.signatures) == len(DEFAULT_RANGE_LIMIT_SIGNATURES) + 1

    def test_custom_signatures_are_lowercased(self) -> None:
        classifier = RangeLimitClassifier(signatures=("Custom LIMIT",))
        assert classifier.signatures == ("custom limit",)
        assert classifier.is_range_limit(Exception("CUSTOM limit hit"))
