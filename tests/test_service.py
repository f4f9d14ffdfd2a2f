"""Test the HTTP service surface: public routes, lifespan and error rendering."""

import os
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from test_helpers import MASTER_KEY, send

from src.config import ConfigurationError
from src.service.main import app


class TestPublicRoutes:
    def test_root(self, api_client):
        response = api_client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "available"}

    def test_version_requires_key(self, api_client):
        assert send(api_client, "GET", "/version").status_code == 401
        assert send(api_client, "GET", "/version", MASTER_KEY).json()["pkgVersion"]


class TestLifespan:
    def test_startup_fails_without_master_key(self):
        with patch.dict(os.environ, {"MASTER_API_KEY": ""}):
            with pytest.raises(ConfigurationError):
                with TestClient(app):
                    pass

    def test_worker_processes_tasks(self, mock_env_vars):
        with TestClient(app) as client:
            response = send(client, "POST", "/indexes/movies/documents", MASTER_KEY, json=[{"id": 1, "title": "Carol"}])
            assert response.status_code == 202
            task_uid = response.json()["uid"]

            status = None
            for _ in range(200):
                status = send(client, "GET", f"/tasks/{task_uid}", MASTER_KEY).json()["status"]
                if status in ("succeeded", "failed"):
                    break
                time.sleep(0.01)

            assert status == "succeeded"
            search = send(client, "GET", "/indexes/movies/search?q=car", MASTER_KEY).json()
            assert search["hits"] == [{"id": 1, "title": "Carol"}]


class TestErrorRendering:
    def test_response_error_payload(self, api_client):
        response = send(api_client, "GET", "/indexes/missing", MASTER_KEY)
        assert response.status_code == 404
        assert response.json() == {
            "message": "Index `missing` not found.",
            "code": "index_not_found",
            "type": "invalid_request",
            "link": "https://docs.meilisearch.com/errors#index_not_found",
        }

    def test_malformed_body(self, api_client):
        response = send(api_client, "POST", "/indexes/products/documents", MASTER_KEY, json={"id": 1})
        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"

    def test_unknown_setting(self, api_client, task_queue, test_helpers):
        test_helpers.create_index(api_client, task_queue, "products")
        response = send(api_client, "GET", "/indexes/products/settings/colour", MASTER_KEY)
        assert response.status_code == 404

    def test_custom_docs_url(self, api_client, container):
        container.get("settings").error_docs_url = "https://errors.example.com"
        response = send(api_client, "GET", "/indexes/missing", MASTER_KEY)
        assert response.json()["link"] == "https://errors.example.com#index_not_found"

    def test_invalid_index_uid_on_create(self, api_client):
        response = send(api_client, "POST", "/indexes", MASTER_KEY, json={"uid": "bad uid"})
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_index_uid"


class TestIndexRoutes:
    def test_document_round_trip_through_tasks(self, api_client, task_queue, test_helpers):
        test_helpers.create_index(api_client, task_queue, "products", "sku")

        send(api_client, "POST", "/indexes/products/documents", MASTER_KEY, json=[{"sku": "a", "name": "Lamp"}])
        send(api_client, "PUT", "/indexes/products/documents", MASTER_KEY, json=[{"sku": "a", "color": "red"}])
        task_queue.process_pending()

        document = send(api_client, "GET", "/indexes/products/documents/a", MASTER_KEY).json()
        assert document == {"sku": "a", "name": "Lamp", "color": "red"}

        send(api_client, "POST", "/indexes/products/documents/delete-batch", MASTER_KEY, json=["a"])
        task_queue.process_pending()
        assert send(api_client, "GET", "/indexes/products/documents/a", MASTER_KEY).status_code == 404

    def test_stats_and_index_tasks(self, api_client, task_queue, test_helpers):
        test_helpers.create_index(api_client, task_queue, "products")

        stats = send(api_client, "GET", "/indexes/products/stats", MASTER_KEY).json()
        assert stats == {"numberOfDocuments": 0, "isIndexing": False, "fieldDistribution": {}}

        tasks = send(api_client, "GET", "/indexes/products/tasks", MASTER_KEY).json()["results"]
        assert [t["type"] for t in tasks] == ["indexCreation"]
        assert send(api_client, "GET", "/indexes/other/tasks/0", MASTER_KEY).status_code == 404

    def test_dump(self, api_client, task_queue):
        response = send(api_client, "POST", "/dumps", MASTER_KEY)
        assert response.status_code == 202
        dump_uid = response.json()["dumpUid"]

        task_queue.process_pending()
        status = send(api_client, "GET", f"/dumps/{dump_uid}/status", MASTER_KEY).json()
        assert status["status"] == "done"


class TestFailedWritesLeaveNoTrace:
    def _tasks(self, api_client):
        return send(api_client, "GET", "/tasks", MASTER_KEY).json()["results"]

    def test_unknown_settings_rejected_before_enqueue(self, api_client, task_queue):
        response = send(api_client, "POST", "/indexes/ghost/settings", MASTER_KEY, json={"bogus": 1})
        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"

        task_queue.process_pending()
        assert self._tasks(api_client) == []
        assert send(api_client, "GET", "/indexes/ghost", MASTER_KEY).status_code == 404

    def test_document_batch_is_all_or_nothing(self, api_client, task_queue, test_helpers):
        test_helpers.create_index(api_client, task_queue, "products", "id")

        batch = [{"id": 1}, {"id": 2}, {"name": "no id"}]
        response = send(api_client, "POST", "/indexes/products/documents", MASTER_KEY, json=batch)
        task_queue.process_pending()

        task = send(api_client, "GET", f"/tasks/{response.json()['uid']}", MASTER_KEY).json()
        assert task["status"] == "failed"
        assert task["error"]["code"] == "missing_document_id"
        assert send(api_client, "GET", "/indexes/products/documents", MASTER_KEY).json() == []

    @pytest.mark.parametrize("path", ["/indexes/ghost/settings", "/indexes/ghost/settings/stop-words"])
    def test_settings_reset_does_not_create_index(self, api_client, task_queue, path):
        response = send(api_client, "DELETE", path, MASTER_KEY)
        assert response.status_code == 202
        task_queue.process_pending()

        task = send(api_client, "GET", f"/tasks/{response.json()['uid']}", MASTER_KEY).json()
        assert task["status"] == "failed"
        assert task["error"]["code"] == "index_not_found"
        assert send(api_client, "GET", "/indexes/ghost", MASTER_KEY).status_code == 404

    def test_settings_update_still_creates_index(self, api_client, task_queue):
        response = send(api_client, "POST", "/indexes/fresh/settings/stop-words", MASTER_KEY, json=["the"])
        task_queue.process_pending()

        task = send(api_client, "GET", f"/tasks/{response.json()['uid']}", MASTER_KEY).json()
        assert task["status"] == "succeeded"
        assert send(api_client, "GET", "/indexes/fresh/settings/stop-words", MASTER_KEY).json() == ["the"]
