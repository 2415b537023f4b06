from __future__ import annotations

import copy
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

# Ensure `backend/` is on sys.path so `import primechances.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from boto3.dynamodb.conditions import (  # noqa: E402
    And,
    BeginsWith,
    Between,
    Equals,
    GreaterThan,
    GreaterThanEquals,
    LessThan,
    LessThanEquals,
)

from primechances.db.dynamodb.errors import DdbConflict  # noqa: E402
from primechances.db.dynamodb.table import Page  # noqa: E402

_SORT_KEYS = {None: "sk", "GSI1": "gsi1sk", "GSI2": "gsi2sk"}

REPO_MODULES = (
    "primechances.repositories.opportunities_repo",
    "primechances.repositories.engagement_repo",
    "primechances.repositories.outbox_repo",
    "primechances.repositories.user_profiles_repo",
    "primechances.repositories.user_roles_repo",
    "primechances.repositories.feature_toggles_repo",
    "primechances.repositories.activity_log_repo",
    "primechances.repositories.notifications_repo",
)


class FakeTable:
    """
    In-memory stand-in for DynamoTable used by the repositories.

    Supports the expression shapes the repositories emit: SET/ADD/REMOVE
    updates, attribute_(not_)exists(pk) and `#n = :v` / `#n <> :v` conditions
    joined with AND, boto3 Key conditions, and all-or-nothing transactions.
    `fail_ops` maps a method name to an exception raised on its next call(s).
    """

    def __init__(self):
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_ops: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        exc = self.fail_ops.get(op)
        if exc is not None:
            raise exc

    @staticmethod
    def _k(key: dict[str, Any]) -> tuple[str, str]:
        return str(key.get("pk") or ""), str(key.get("sk") or "")

    # --- conditions ---

    def _check(
        self,
        key: tuple[str, str],
        condition: str | None,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
        op: str,
    ) -> None:
        if not condition:
            return
        cur = self.items.get(key)
        for part in [p.strip() for p in condition.split(" AND ")]:
            ok = True
            if part == "attribute_not_exists(pk)":
                ok = cur is None
            elif part == "attribute_exists(pk)":
                ok = cur is not None
            else:
                m = re.fullmatch(r"(#?\w+)\s*(=|<>)\s*(:\w+)", part)
                assert m, f"unsupported condition: {part}"
                attr = (names or {}).get(m.group(1), m.group(1))
                want = (values or {}).get(m.group(3))
                has = cur is not None and attr in cur
                if m.group(2) == "=":
                    ok = has and cur[attr] == want
                else:
                    ok = not has or cur[attr] != want
            if not ok:
                raise DdbConflict(message="conditional check failed", operation=op, table_name="Fake", key=dict(zip(("pk", "sk"), key)))

    # --- basic operations ---

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = False) -> dict[str, Any] | None:
        self._enter("get_item")
        it = self.items.get(self._k(key))
        return copy.deepcopy(it) if it is not None else None

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._enter("put_item")
        k = self._k(item)
        self._check(k, condition_expression, expression_attribute_names, expression_attribute_values, "PutItem")
        self.items[k] = copy.deepcopy(item)
        return {}

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._enter("delete_item")
        k = self._k(key)
        self._check(k, condition_expression, expression_attribute_names, expression_attribute_values, "DeleteItem")
        self.items.pop(k, None)
        return {}

    def _apply_update(
        self,
        k: tuple[str, str],
        update_expression: str,
        names: dict[str, str] | None,
        values: dict[str, Any],
    ) -> dict[str, Any]:
        cur = copy.deepcopy(self.items.get(k) or {"pk": k[0], "sk": k[1]})

        def name(n: str) -> str:
            n = n.strip()
            return str((names or {}).get(n, n))

        parts = re.split(r"\b(SET|ADD|REMOVE)\b", update_expression)
        clause = None
        for p in parts:
            p = p.strip()
            if p in ("SET", "ADD", "REMOVE"):
                clause = p
                continue
            if not p:
                continue
            for a in [x.strip() for x in p.split(",") if x.strip()]:
                if clause == "SET":
                    left, right = a.split("=", 1)
                    cur[name(left)] = copy.deepcopy(values.get(right.strip()))
                elif clause == "ADD":
                    fld, tok = a.split()
                    cur[name(fld)] = (cur.get(name(fld)) or 0) + values[tok.strip()]
                elif clause == "REMOVE":
                    cur.pop(name(a), None)
        self.items[k] = cur
        return copy.deepcopy(cur)

    def update_item(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any],
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
    ) -> dict[str, Any] | None:
        self._enter("update_item")
        k = self._k(key)
        self._check(k, condition_expression, expression_attribute_names, expression_attribute_values, "UpdateItem")
        return self._apply_update(k, update_expression, expression_attribute_names, expression_attribute_values)

    def increment(self, *, key: dict[str, Any], field: str, by: int = 1) -> dict[str, Any] | None:
        self._enter("increment")
        return self.update_item(
            key=key,
            update_expression="SET updatedAt = :u ADD #f :by",
            expression_attribute_names={"#f": field},
            expression_attribute_values={":by": int(by), ":u": "2000-01-01T00:00:00Z"},
            condition_expression="attribute_exists(pk)",
        )

    # --- queries ---

    @staticmethod
    def _match(cond: Any, item: dict[str, Any]) -> bool:
        if isinstance(cond, And):
            left, right = cond.get_expression()["values"]
            return FakeTable._match(left, item) and FakeTable._match(right, item)
        vals = cond.get_expression()["values"]
        attr = vals[0].name
        if attr not in item:
            return False
        v = item[attr]
        if isinstance(cond, Equals):
            return v == vals[1]
        if isinstance(cond, BeginsWith):
            return str(v).startswith(str(vals[1]))
        if isinstance(cond, Between):
            return vals[1] <= v <= vals[2]
        if isinstance(cond, LessThan):
            return v < vals[1]
        if isinstance(cond, LessThanEquals):
            return v <= vals[1]
        if isinstance(cond, GreaterThan):
            return v > vals[1]
        if isinstance(cond, GreaterThanEquals):
            return v >= vals[1]
        raise AssertionError(f"unsupported key condition: {cond!r}")

    def _query(self, key_condition_expression: Any, index_name: str | None, scan_index_forward: bool) -> list[dict[str, Any]]:
        sort_key = _SORT_KEYS[index_name]
        rows = [copy.deepcopy(it) for it in self.items.values() if self._match(key_condition_expression, it)]
        rows.sort(key=lambda it: str(it.get(sort_key) or ""), reverse=not scan_index_forward)
        return rows

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        filter_expression: Any | None = None,
        next_token: str | None = None,
    ) -> Page:
        self._enter("query_page")
        rows = self._query(key_condition_expression, index_name, scan_index_forward)
        # Tokens here are plain offsets.
        start = int(next_token or 0)
        end = start + max(1, int(limit or 50))
        return Page(items=rows[start:end], next_token=str(end) if end < len(rows) else None)

    def query_all(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = True,
        max_items: int = 5000,
    ) -> list[dict[str, Any]]:
        self._enter("query_all")
        return self._query(key_condition_expression, index_name, scan_index_forward)[:max_items]

    # --- transactions ---

    def tx_put(self, *, item: dict[str, Any], condition_expression: str | None = None, **_kw) -> dict[str, Any]:
        return {"Item": copy.deepcopy(item), "ConditionExpression": condition_expression}

    def tx_delete(self, *, key: dict[str, Any], condition_expression: str | None = None) -> dict[str, Any]:
        return {"Key": dict(key), "ConditionExpression": condition_expression}

    def tx_update(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any],
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        return {
            "Key": dict(key),
            "UpdateExpression": update_expression,
            "ExpressionAttributeNames": expression_attribute_names,
            "ExpressionAttributeValues": expression_attribute_values,
            "ConditionExpression": condition_expression,
        }

    def tx_condition_check(self, *, key: dict[str, Any], condition_expression: str) -> dict[str, Any]:
        return {"Key": dict(key), "ConditionExpression": condition_expression}

    def transact_write(self, *, puts=(), deletes=(), updates=(), checks=(), **_kw) -> dict[str, Any]:
        self._enter("transact_write")
        puts, deletes, updates, checks_ = list(puts), list(deletes), list(updates), list(checks)
        # Check every condition before applying anything; reasons follow item order.
        checks = [(self._k(p["Item"]), p.get("ConditionExpression"), None, None) for p in puts]
        checks += [(self._k(d["Key"]), d.get("ConditionExpression"), None, None) for d in deletes]
        checks += [
            (
                self._k(u["Key"]),
                u.get("ConditionExpression"),
                u.get("ExpressionAttributeNames"),
                u.get("ExpressionAttributeValues"),
            )
            for u in updates
        ]
        checks += [(self._k(c["Key"]), c["ConditionExpression"], None, None) for c in checks_]
        reasons: list[str] = []
        for key, cond, names, values in checks:
            try:
                self._check(key, cond, names, values, "TransactWriteItems")
                reasons.append("None")
            except DdbConflict:
                reasons.append("ConditionalCheckFailed")
        if "ConditionalCheckFailed" in reasons:
            raise DdbConflict(
                message="DynamoDB transaction condition failed",
                operation="TransactWriteItems",
                table_name="Fake",
                reasons=reasons,
            )
        for p in puts:
            self.items[self._k(p["Item"])] = copy.deepcopy(p["Item"])
        for d in deletes:
            self.items.pop(self._k(d["Key"]), None)
        for u in updates:
            self._apply_update(
                self._k(u["Key"]),
                u["UpdateExpression"],
                u.get("ExpressionAttributeNames"),
                u["ExpressionAttributeValues"],
            )
        return {"ok": True}

    # --- helpers for assertions ---

    def rows_with_prefix(self, pk_prefix: str, sk_prefix: str = "") -> list[dict[str, Any]]:
        return [
            copy.deepcopy(v)
            for (pk, sk), v in self.items.items()
            if pk.startswith(pk_prefix) and sk.startswith(sk_prefix)
        ]


@pytest.fixture()
def fake_table(monkeypatch):
    import importlib

    t = FakeTable()
    for name in REPO_MODULES:
        monkeypatch.setattr(importlib.import_module(name), "get_main_table", lambda: t)
    return t


class Clock:
    """Settable clock for services that take `now_fn`."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock():
    return Clock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture()
def draft():
    def _make(**overrides: Any) -> dict[str, Any]:
        data = {
            "title": "Data Science Fellowship",
            "organization": "Open Data Lab",
            "description": "A paid fellowship for computer science graduates.",
            "categoryId": "fellowships",
            "location": "Nairobi, Kenya",
            "applicationUrl": "https://example.org/apply",
        }
        data.update(overrides)
        return data

    return _make
