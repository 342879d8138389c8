"""
Tests for odata_core.core and the scalar query option helpers.
"""

import os
import threading

import pytest
from unittest.mock import patch

from odata_core.core import etag as etags
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import (
    AuthorizationError,
    FeatureNotImplemented,
    HookError,
    InternalError,
    NotFoundError,
    ODataError,
    PreconditionFailed,
    ValidationError,
    as_odata_error,
    status_for,
)
import odata_core
from odata_core.query.options import ComputeExpression, FilterExpression, OrderByItem, QueryOptions
from odata_core.query.preference import Preference
from odata_core.storage.base import Query


class TestServiceConfig:
    """Tests for ServiceConfig."""

    def test_defaults(self):
        cfg = ServiceConfig()
        assert cfg.service_root == "http://localhost/odata/"
        assert cfg.max_page_size is None
        assert cfg.null_fk_policy == "error"
        assert cfg.track_changes is True
        assert cfg.weak_etags is True

    def test_root_gets_trailing_slash(self):
        assert ServiceConfig(service_root="http://h/svc").service_root == "http://h/svc/"
        assert ServiceConfig(service_root="http://h/svc//").service_root == "http://h/svc/"

    @pytest.mark.parametrize("kwargs", [{"null_fk_policy": "ignore"}, {"max_page_size": 0}, {"max_page_size": -5}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ServiceConfig(**kwargs)

    def test_from_env(self):
        env = {
            "ODATA_SERVICE_ROOT": "http://example.com:5050/odata",
            "ODATA_MAX_PAGE_SIZE": "25",
            "ODATA_NULL_FK_POLICY": " Zero ",
            "ODATA_TRACK_CHANGES": "off",
            "ODATA_WEAK_ETAGS": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = ServiceConfig.from_env()
        assert cfg.service_root == "http://example.com:5050/odata/"
        assert cfg.max_page_size == 25
        assert cfg.null_fk_policy == "zero"
        assert cfg.track_changes is False
        assert cfg.weak_etags is False
        assert cfg.strict_payloads is True

    def test_from_env_empty(self):
        with patch.dict(os.environ, {}, clear=True):
            assert ServiceConfig.from_env() == ServiceConfig()

    def test_from_env_custom_prefix(self):
        with patch.dict(os.environ, {"SVC_MAX_PAGE_SIZE": "3"}, clear=True):
            assert ServiceConfig.from_env(prefix="SVC_").max_page_size == 3

    def test_from_env_bad_policy(self):
        with patch.dict(os.environ, {"ODATA_NULL_FK_POLICY": "drop"}, clear=True):
            with pytest.raises(ValueError):
                ServiceConfig.from_env()


class TestErrors:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize(
        "cls, status",
        [
            (ValidationError, 400),
            (AuthorizationError, 403),
            (NotFoundError, 404),
            (PreconditionFailed, 412),
            (FeatureNotImplemented, 501),
            (InternalError, 500),
        ],
    )
    def test_status(self, cls, status):
        err = cls("boom")
        assert err.status == status
        assert status_for(err) == status

    def test_to_dict(self):
        err = ValidationError("bad value", target="Total", details=[{"code": "x", "message": "y"}])
        assert err.to_dict() == {
            "error": {
                "code": "Bad request",
                "message": "bad value",
                "target": "Total",
                "details": [{"code": "x", "message": "y"}],
            }
        }

    def test_to_dict_minimal(self):
        assert NotFoundError("gone", code="Custom").to_dict() == {"error": {"code": "Custom", "message": "gone"}}

    def test_unknown_exception_is_500(self):
        assert status_for(KeyError("x")) == 500

    def test_as_odata_error_wraps(self):
        cause = LookupError("nope")
        err = as_odata_error(cause, AuthorizationError, "Denied")
        assert isinstance(err, AuthorizationError)
        assert err.code == "Denied"
        assert err.message == "nope"
        assert err.__cause__ is cause

    def test_as_odata_error_passthrough(self):
        err = NotFoundError("x")
        assert as_odata_error(err) is err

    def test_empty_message_uses_class_name(self):
        assert as_odata_error(RuntimeError()).message == "RuntimeError"

    def test_hook_error_status(self):
        assert HookError("slow down", status=429).status == 429
        assert HookError("no").status == 403
        assert isinstance(HookError("x"), ODataError)


class TestEtag:
    """Tests for ETag generation and precondition evaluation."""

    def test_generate(self, registry):
        orders = registry.by_set("Orders")
        tag = etags.generate({"ID": 1, "Version": 3}, orders)
        assert tag.startswith('W/"') and tag.endswith('"')
        assert len(etags.parse(tag)) == 64
        assert tag == etags.generate({"ID": 2, "Version": 3}, orders)
        assert tag != etags.generate({"ID": 1, "Version": 4}, orders)

    def test_strong(self, registry):
        tag = etags.generate({"Version": 3}, registry.by_set("Orders"), weak=False)
        assert tag.startswith('"')

    def test_no_etag_property(self, registry):
        assert etags.generate({"ID": 1, "Name": "x"}, registry.by_set("Customers")) == ""

    def test_missing_value(self, registry):
        assert etags.generate({"ID": 1}, registry.by_set("Orders")) == ""

    @pytest.mark.parametrize(
        "header, expected",
        [('W/"abc"', "abc"), ('"abc"', "abc"), ("abc", "abc"), ("", ""), (None, "")],
    )
    def test_parse(self, header, expected):
        assert etags.parse(header) == expected

    def test_matches(self):
        current = 'W/"abc"'
        assert etags.matches(None, current)
        assert etags.matches("*", current)
        assert etags.matches('"abc"', current)
        assert etags.matches('W/"old", W/"abc"', current)
        assert not etags.matches('W/"old"', current)
        assert not etags.matches("*", "")

    def test_none_match(self):
        current = 'W/"abc"'
        assert etags.none_match(None, current)
        assert not etags.none_match('W/"abc"', current)
        assert etags.none_match('W/"old"', current)
        assert not etags.none_match("*", current)
        assert etags.none_match("*", "")


class TestRequestContext:
    """Tests for RequestContext."""

    def test_headers_case_insensitive(self):
        ctx = RequestContext(headers={"if-match": "*", "PREFER": "return=minimal"})
        assert ctx.if_match == "*"
        assert ctx.prefer == "return=minimal"
        assert ctx.if_none_match is None
        assert ctx.header("X-Missing", "d") == "d"

    def test_cancel_event(self):
        event = threading.Event()
        ctx = RequestContext(cancel_event=event)
        ctx.check_cancelled()
        event.set()
        with pytest.raises(InternalError) as exc:
            ctx.check_cancelled()
        assert exc.value.code == "RequestCancelled"

    def test_expired_deadline(self):
        assert RequestContext.with_timeout(0, url="x").cancelled
        assert not RequestContext.with_timeout(60).cancelled

    def test_cancel_rolls_back_transaction(self, store):
        event = threading.Event()
        ctx = RequestContext(cancel_event=event)
        with pytest.raises(InternalError):
            with store.transaction(ctx) as tx:
                tx.create("Customers", {"Name": "Ghost"})
                event.set()
        with store.transaction() as tx:
            assert tx.count(Query("Customers")) == 5

    def test_cancelled_request_fails_fast(self, store):
        ctx = RequestContext.with_timeout(0)
        with pytest.raises(InternalError):
            with store.transaction(ctx) as tx:
                tx.get("Customers", {"ID": 1})


class TestPreference:
    """Tests for Prefer header parsing."""

    def test_parse(self):
        pref = Preference.parse('return=representation, odata.maxpagesize="20", odata.track-changes')
        assert pref.return_representation
        assert pref.max_page_size == 20
        assert pref.track_changes_requested

    @pytest.mark.parametrize("header", [None, "", "odata.maxpagesize=abc", "maxpagesize=0", "return=other"])
    def test_ignored(self, header):
        pref = Preference.parse(header)
        assert pref.max_page_size is None
        assert not pref.return_minimal and not pref.return_representation

    def test_return_content(self):
        assert Preference().should_return_content(is_create=True)
        assert not Preference().should_return_content(is_create=False)
        assert not Preference.parse("return=minimal").should_return_content(is_create=True)
        assert Preference.parse("return=representation").should_return_content(is_create=False)

    def test_applied_only_when_honoured(self):
        pref = Preference.parse("maxpagesize=5, track-changes")
        assert pref.preference_applied() == ""
        pref.apply_max_page_size()
        pref.apply_track_changes()
        assert pref.preference_applied() == "odata.maxpagesize=5, odata.track-changes"


class TestQueryOptions:
    """Tests for QueryOptions.from_params."""

    def test_from_params(self):
        options = QueryOptions.from_params(
            {
                "$top": "10",
                "$skip": "5",
                "$orderby": "Name desc, City asc,ID",
                "$select": "Name, City",
                "$count": "TRUE",
                "$search": "berlin",
                "$skiptoken": "abc",
            }
        )
        assert options.top == 10
        assert options.skip == 5
        assert options.order_by == [OrderByItem("Name", True), OrderByItem("City"), OrderByItem("ID")]
        assert options.select == ["Name", "City"]
        assert options.count is True
        assert options.search == "berlin"
        assert options.skip_token == "abc"
        assert options.delta_token is None

    def test_empty(self):
        assert QueryOptions.from_params({}) == QueryOptions()

    @pytest.mark.parametrize(
        "params",
        [{"$top": "abc"}, {"$skip": "1.5"}, {"$count": "yes"}, {"$orderby": "Name up"}, {"$orderby": "a b c"}],
    )
    def test_invalid(self, params):
        with pytest.raises(ValueError):
            QueryOptions.from_params(params)

    def test_order_by_str(self):
        assert str(OrderByItem("Total", descending=True)) == "Total desc"

    def test_computed_aliases(self):
        class GroupBy:
            aliases = ("Sum",)

        options = QueryOptions(compute=[ComputeExpression("Net")], apply=[GroupBy(), object()])
        assert options.computed_aliases() == {"Net", "Sum"}


class TestFilterExpression:
    """Tests for the parsed filter node."""

    def test_package_exports(self):
        assert odata_core.FilterExpression is FilterExpression

    @pytest.mark.parametrize("operator, expected", [("any", True), ("all", True), ("eq", False), ("", False)])
    def test_is_lambda(self, operator, expected):
        assert FilterExpression(operator=operator).is_lambda is expected

    def test_property_field(self):
        node = FilterExpression("any", "Products", left=FilterExpression("gt", "Price", 5))
        assert node.property == "Products"
        assert node.left.property == "Price"
        assert not node.left.is_lambda
