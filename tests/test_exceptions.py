"""Tests for the error taxonomy."""

import pytest

from tritoncloud.exceptions import (AmbiguousName, AmbiguousShortId, InternalError, MultiError, NotFound, TransportError, TritonError,
                                    UsageError)


class TestTritonError:
    def test_default_code_and_exit_status(self):
        assert UsageError("bad flag").code == 'Usage'
        assert UsageError("bad flag").exit_status == 2
        assert NotFound("gone").exit_status == 3

    def test_message_includes_cause(self):
        cause = ConnectionResetError("reset by peer")
        err = TransportError("failed to connect", cause=cause)
        assert str(err) == "failed to connect: reset by peer"
        assert list(err.cause_chain()) == [err, cause]

    def test_message_does_not_repeat_cause(self):
        cause = ValueError("boom")
        err = TritonError("caught boom", cause=cause)
        assert str(err) == "caught boom"


class TestAmbiguity:
    def test_ambiguous_name_lists_matches(self):
        err = AmbiguousName('packages', 'small', [{'id': 'a1', 'name': 'small'}, {'id': 'b2', 'name': 'small'}])
        assert 'small' in str(err)
        assert len(err.matches) == 2

    def test_ambiguous_short_id(self):
        err = AmbiguousShortId('instances', 'abcd', [{'id': 'abcd0001'}, {'id': 'abcd0002'}])
        assert 'abcd' in str(err)


class TestMultiError:
    def test_requires_errors(self):
        with pytest.raises(InternalError):
            MultiError([])

    def test_reports_each_dc_and_exits_like_the_first(self):
        first = UsageError("first")
        first.dc = 'us-east-1'
        second = NotFound("second")
        second.dc = 'us-west-1'
        err = MultiError([first, second])
        assert err.first() is first
        assert err.exit_status == 2
        assert 'us-east-1: first' in str(err)
        assert 'us-west-1: second' in str(err)
