"""End-to-end authorization tests against the HTTP API."""

from datetime import timedelta

import pytest
from test_helpers import ALL_ACTIONS, AUTHORIZATIONS, INVALID_API_KEY_RESPONSE, MASTER_KEY, send

ONE_HOUR = timedelta(hours=1)


def _in(clock, delta: timedelta) -> str:
    return (clock.now + delta).isoformat()


class TestDenials:
    def test_expired_key_denied_everywhere(self, api_client, clock, test_helpers):
        key = test_helpers.create_key(
            api_client,
            indexes=["products"],
            actions=ALL_ACTIONS,
            expiresAt=_in(clock, timedelta(seconds=1)),
        )["key"]

        assert send(api_client, "GET", "/stats", key).status_code == 200

        clock.advance(seconds=1)

        for method, path in AUTHORIZATIONS:
            response = send(api_client, method, path, key)
            assert response.status_code == 403, (method, path)
            assert response.json() == INVALID_API_KEY_RESPONSE

    def test_unauthorized_index(self, api_client, clock, test_helpers):
        key = test_helpers.create_key(
            api_client, indexes=["sales"], actions=ALL_ACTIONS, expiresAt=_in(clock, ONE_HOUR)
        )["key"]

        for method, path in AUTHORIZATIONS:
            if not path.startswith("/indexes/products"):
                continue
            response = send(api_client, method, path, key)
            assert response.status_code == 403, (method, path)
            assert response.json() == INVALID_API_KEY_RESPONSE

    def test_unauthorized_action(self, api_client, clock, test_helpers):
        created = test_helpers.create_key(
            api_client, indexes=["products"], actions=[], expiresAt=_in(clock, ONE_HOUR)
        )

        for (method, path), action in AUTHORIZATIONS.items():
            test_helpers.patch_key(api_client, created["uid"], actions=[a for a in ALL_ACTIONS if a != action])

            response = send(api_client, method, path, created["key"])
            assert response.status_code == 403, (method, path)
            assert response.json() == INVALID_API_KEY_RESPONSE

    def test_no_actions_denied_everywhere(self, api_client, clock, test_helpers):
        key = test_helpers.create_key(
            api_client, indexes=["products"], actions=[], expiresAt=_in(clock, ONE_HOUR)
        )["key"]

        for method, path in AUTHORIZATIONS:
            response = send(api_client, method, path, key)
            assert response.status_code == 403, (method, path)
            assert response.json() == INVALID_API_KEY_RESPONSE

    def test_unknown_and_deleted_keys(self, api_client, test_helpers):
        created = test_helpers.create_key(api_client, indexes=["*"], actions=["*"])
        assert send(api_client, "GET", "/version", created["key"]).status_code == 200

        send(api_client, "DELETE", f"/keys/{created['uid']}", MASTER_KEY)

        for key in (created["key"], "not-a-key"):
            response = send(api_client, "GET", "/version", key)
            assert response.status_code == 403
            assert response.json() == INVALID_API_KEY_RESPONSE

    def test_missing_header(self, api_client):
        response = send(api_client, "GET", "/version")
        assert response.status_code == 401
        assert response.json()["code"] == "missing_authorization_header"


BODY_ROUTES = [(method, path) for method, path in AUTHORIZATIONS if method in ("POST", "PUT")]


def _send_malformed(api_client, method, path, key=None):
    return send(api_client, method, path, key, content=b"{oops", headers={"Content-Type": "application/json"})


class TestMalformedBodies:
    @pytest.mark.parametrize("method,path", BODY_ROUTES)
    def test_unknown_key_denied_before_body_is_checked(self, api_client, method, path):
        response = _send_malformed(api_client, method, path, "not-a-key")
        assert response.status_code == 403, (method, path)
        assert response.json() == INVALID_API_KEY_RESPONSE

    @pytest.mark.parametrize("method,path", [r for r in BODY_ROUTES if r[1].startswith("/indexes/products")])
    def test_out_of_scope_key_denied(self, api_client, test_helpers, method, path):
        key = test_helpers.create_key(api_client, indexes=["sales"], actions=["*"])["key"]

        response = _send_malformed(api_client, method, path, key)
        assert response.status_code == 403, (method, path)
        assert response.json() == INVALID_API_KEY_RESPONSE

    def test_missing_header(self, api_client):
        response = _send_malformed(api_client, "POST", "/indexes/products/documents")
        assert response.status_code == 401
        assert response.json()["code"] == "missing_authorization_header"

    def test_authorized_caller_sees_bad_request(self, api_client, test_helpers):
        key = test_helpers.create_key(api_client, indexes=["products"], actions=["documents.add"])["key"]

        response = _send_malformed(api_client, "POST", "/indexes/products/documents", key)
        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"

    def test_key_management_checks_master_key_first(self, api_client, test_helpers):
        key = test_helpers.create_key(api_client, indexes=["*"], actions=["*"])["key"]

        denied = _send_malformed(api_client, "POST", "/keys", key)
        assert denied.status_code == 403
        assert denied.json() == INVALID_API_KEY_RESPONSE

        response = _send_malformed(api_client, "POST", "/keys", MASTER_KEY)
        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"


class TestAccess:
    @pytest.mark.parametrize("indexes", [["products"], ["*"]])
    def test_single_action_or_wildcard_allows(self, api_client, clock, test_helpers, indexes):
        created = test_helpers.create_key(api_client, indexes=indexes, actions=[], expiresAt=_in(clock, ONE_HOUR))

        for (method, path), action in AUTHORIZATIONS.items():
            for actions in ([action], ["*"]):
                test_helpers.patch_key(api_client, created["uid"], actions=actions)

                response = send(api_client, method, path, created["key"])
                assert response.status_code != 403, (method, path, actions)
                assert response.json() != INVALID_API_KEY_RESPONSE

    def test_master_key_allowed_everywhere(self, api_client):
        for method, path in AUTHORIZATIONS:
            assert send(api_client, method, path, MASTER_KEY).status_code != 403, (method, path)

    def test_create_index_checks_body_uid_scope(self, api_client, task_queue, test_helpers):
        key = test_helpers.create_key(api_client, indexes=["products"], actions=["indexes.create"])["key"]

        denied = send(api_client, "POST", "/indexes", key, json={"uid": "sales"})
        assert denied.status_code == 403
        assert denied.json() == INVALID_API_KEY_RESPONSE

        accepted = send(api_client, "POST", "/indexes", key, json={"uid": "products"})
        assert accepted.status_code == 202
        assert accepted.json()["type"] == "indexCreation"


class TestTenantFiltering:
    @pytest.fixture(autouse=True)
    def two_indexes(self, api_client, task_queue, test_helpers):
        test_helpers.create_index(api_client, task_queue, "test", "id")
        test_helpers.create_index(api_client, task_queue, "products", "product_id")

    @pytest.mark.parametrize("indexes,visible", [(["products"], {"products"}), (["*"], {"products", "test"})])
    def test_list_indexes(self, api_client, clock, test_helpers, indexes, visible):
        key = test_helpers.create_key(
            api_client, indexes=indexes, actions=["indexes.get"], expiresAt=_in(clock, ONE_HOUR)
        )["key"]

        response = send(api_client, "GET", "/indexes", key)
        assert response.status_code == 200
        assert {index["uid"] for index in response.json()} == visible

    @pytest.mark.parametrize("indexes,visible", [(["products"], {"products"}), (["*"], {"products", "test"})])
    def test_list_tasks(self, api_client, clock, test_helpers, indexes, visible):
        key = test_helpers.create_key(
            api_client, indexes=indexes, actions=["tasks.get"], expiresAt=_in(clock, ONE_HOUR)
        )["key"]

        response = send(api_client, "GET", "/tasks", key)
        assert response.status_code == 200
        assert {task["indexUid"] for task in response.json()["results"]} == visible

    @pytest.mark.parametrize("indexes,visible", [(["products"], {"products"}), (["*"], {"products", "test"})])
    def test_stats(self, api_client, clock, test_helpers, indexes, visible):
        key = test_helpers.create_key(
            api_client, indexes=indexes, actions=["stats.get"], expiresAt=_in(clock, ONE_HOUR)
        )["key"]

        response = send(api_client, "GET", "/stats", key)
        assert response.status_code == 200
        assert set(response.json()["indexes"]) == visible

    def test_out_of_scope_task_reads_as_not_found(self, api_client, test_helpers):
        key = test_helpers.create_key(api_client, indexes=["products"], actions=["tasks.get"])["key"]

        # task 0 created index `test`, task 1 created index `products`
        assert send(api_client, "GET", "/tasks/1", key).status_code == 200
        response = send(api_client, "GET", "/tasks/0", key)
        assert response.status_code == 404
        assert response.json()["code"] == "task_not_found"

    def test_dump_tasks_hidden_from_scoped_keys(self, api_client, task_queue, test_helpers):
        send(api_client, "POST", "/dumps", MASTER_KEY)
        key = test_helpers.create_key(api_client, indexes=["products", "test"], actions=["tasks.get"])["key"]

        results = send(api_client, "GET", "/tasks", key).json()["results"]
        assert all(task["indexUid"] is not None for task in results)
        assert any(task["indexUid"] is None for task in send(api_client, "GET", "/tasks", MASTER_KEY).json()["results"])


class TestLazyIndexCreation:
    def _index_not_found(self, uid):
        return {
            "message": f"Index `{uid}` not found.",
            "code": "index_not_found",
            "type": "invalid_request",
            "link": "https://docs.meilisearch.com/errors#index_not_found",
        }

    def _task(self, api_client, key, uid):
        response = send(api_client, "GET", f"/tasks/{uid}", key)
        assert response.status_code == 200
        return response.json()

    def test_creation_denied_without_action(self, api_client, task_queue, test_helpers):
        key = test_helpers.create_key(
            api_client,
            indexes=["*"],
            actions=[a for a in ALL_ACTIONS if a != "indexes.create"],
            expiresAt="2050-11-13T00:00:00Z",
        )["key"]

        writes = [
            ("POST", "/indexes/test/documents", [{"id": 1, "content": "foo"}]),
            ("POST", "/indexes/test/settings", {"distinctAttribute": "test"}),
            ("POST", "/indexes/test/settings/distinct-attribute", "test"),
        ]
        for method, path, body in writes:
            response = send(api_client, method, path, key, json=body)
            assert response.status_code == 202, response.text
            task_queue.process_pending()

            task = self._task(api_client, key, response.json()["uid"])
            assert task["status"] == "failed"
            assert task["error"] == self._index_not_found("test")

        assert send(api_client, "GET", "/indexes/test", MASTER_KEY).status_code == 404

    def test_lazy_create_index(self, api_client, task_queue, test_helpers):
        key = test_helpers.create_key(
            api_client, indexes=["*"], actions=["*"], expiresAt="2050-11-13T00:00:00Z"
        )["key"]

        writes = [
            ("test", "POST", "/indexes/test/documents", [{"id": 1, "content": "foo"}]),
            ("test1", "POST", "/indexes/test1/settings", {"distinctAttribute": "test"}),
            ("test2", "POST", "/indexes/test2/settings/distinct-attribute", "test"),
        ]
        for index_uid, method, path, body in writes:
            response = send(api_client, method, path, key, json=body)
            assert response.status_code == 202, response.text
            task_queue.process_pending()

            task_uid = response.json()["uid"]
            response = send(api_client, "GET", f"/indexes/{index_uid}/tasks/{task_uid}", key)
            assert response.status_code == 200
            assert response.json()["status"] == "succeeded"
            assert send(api_client, "GET", f"/indexes/{index_uid}", key).status_code == 200

        assert send(api_client, "GET", "/indexes/test2/settings/distinct-attribute", key).json() == "test"

    def test_key_deleted_before_processing_keeps_snapshot(self, api_client, task_queue, test_helpers):
        created = test_helpers.create_key(api_client, indexes=["*"], actions=["*"])

        response = send(api_client, "POST", "/indexes/late/documents", created["key"], json=[{"id": 1}])
        send(api_client, "DELETE", f"/keys/{created['uid']}", MASTER_KEY)
        task_queue.process_pending()

        task = self._task(api_client, MASTER_KEY, response.json()["uid"])
        assert task["status"] == "succeeded"

    def test_key_expired_before_processing(self, api_client, clock, task_queue, test_helpers):
        key = test_helpers.create_key(
            api_client, indexes=["*"], actions=["*"], expiresAt=_in(clock, timedelta(seconds=1))
        )["key"]

        response = send(api_client, "POST", "/indexes/late/documents", key, json=[{"id": 1}])
        assert response.status_code == 202

        clock.advance(seconds=2)
        task_queue.process_pending()

        task = self._task(api_client, MASTER_KEY, response.json()["uid"])
        assert task["status"] == "failed"
        assert task["error"]["code"] == "index_not_found"
