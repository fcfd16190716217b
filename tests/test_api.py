import pytest
from fastapi.testclient import TestClient

import config as CFG
from web_api.app import create_app
from web_api.routes import system as system_routes
from web_api.routes import templates as template_routes
from xiaoji_booking.orders import OrderService
from xiaoji_booking.templates import TemplateService


class FakeNotifier:
    def __init__(self):
        self.broadcasts = []

    async def broadcast(self, message, chat_ids):
        self.broadcasts.append((message, list(chat_ids)))
        return {"sent": [str(chat_id) for chat_id in chat_ids], "failed": []}


@pytest.fixture
def client(db, tmp_path, monkeypatch):
    monkeypatch.setattr(CFG, "EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.setattr(CFG, "ADMIN_PASSWORD", "s3cret")
    monkeypatch.setattr(CFG, "GROUP_CHAT_ID", "-100200300")
    with TestClient(create_app()) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "xiaoji-booking-api"}


def test_bind_codes_endpoints(client):
    created = client.post("/api/bind-codes", json={"description": "新老师"}).json()["data"]
    listing = client.get("/api/bind-codes").json()
    assert [item["code"] for item in listing["data"]] == [created["code"]]
    assert listing["stats"]["total"] == 1

    assert client.delete(f"/api/bind-codes/{created['id']}").json()["success"] is True
    response = client.delete(f"/api/bind-codes/{created['id']}")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_merchant_lifecycle(client):
    response = client.post(
        "/api/merchants",
        json={"teacher_name": "林老师", "username": "@teacher_lin", "price1": 500},
    )
    created = response.json()["data"]
    assert created["detectedUserId"] is None
    merchant_id = created["merchantId"]

    merchant = client.get(f"/api/merchants/{merchant_id}").json()["data"]
    assert merchant["username"] == "teacher_lin"
    assert merchant["bind_code"] == created["bindCode"]

    updated = client.put(f"/api/merchants/{merchant_id}", json={"contact": "@lin"}).json()["data"]
    assert updated["contact"] == "@lin"
    assert client.post(f"/api/merchants/{merchant_id}/toggle-status").json()["data"]["status"] == "suspended"
    assert client.put(f"/api/merchants/{merchant_id}/status", json={"status": "bogus"}).status_code == 400

    assert client.delete(f"/api/merchants/{merchant_id}").json()["success"] is True
    assert client.get(f"/api/merchants/{merchant_id}").status_code == 404


def test_merchant_requires_names(client):
    response = client.post("/api/merchants", json={"teacher_name": "林老师"})
    assert response.status_code == 400
    assert response.json()["detail"] == "艺名和用户名不能为空"


def test_regions_endpoints(client):
    region = client.post("/api/regions", json={"name": "上海", "sort_order": 2}).json()["data"]
    assert client.get("/api/regions").json()["data"][0]["name"] == "上海"
    assert client.post("/api/regions", json={"name": ""}).status_code == 400
    other = client.post("/api/regions", json={"name": "北京"}).json()["data"]
    response = client.put(f"/api/regions/{other['id']}", json={"name": "上海"})
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert client.delete(f"/api/regions/{other['id']}").status_code == 200
    assert client.delete(f"/api/regions/{region['id']}").status_code == 200


def test_orders_endpoints(client, db, merchant):
    order_id = OrderService(db).create_order(
        user_id=1001,
        user_name="小 鸡",
        merchant_id=merchant["id"],
        teacher_name="林老师",
        course_type="p",
        price_range="500",
        status="pending",
    )
    listing = client.get("/api/orders", params={"pageSize": 10}).json()["data"]
    assert listing["total"] == 1
    assert listing["orders"][0]["id"] == order_id
    assert client.get(f"/api/orders/{order_id}").json()["data"]["teacher_name"] == "林老师"
    assert client.get("/api/orders/999").status_code == 404


def test_stats_endpoints(client, merchant):
    assert client.get("/api/stats/optimized").json()["success"] is True
    assert client.get("/api/rankings/merchants", params={"limit": 5}).json()["success"] is True
    assert client.get("/api/simple-count/merchants").json()["data"]["count"] == 1


def test_chart_endpoints(client, db, merchant):
    OrderService(db).create_order(
        user_id=1001,
        user_name="小鸡",
        merchant_id=merchant["id"],
        teacher_name="林老师",
        course_type="p",
        price_range="500",
        status="confirmed",
    )
    for name in ("orders-trend", "region-distribution", "price-distribution"):
        assert client.get(f"/api/charts/{name}").status_code == 200
    response = client.get("/api/charts/status-distribution")
    assert response.status_code == 200
    assert response.json()["data"]["statuses"] == ["confirmed"]


def test_task_validation_and_run(client, db, monkeypatch, messenger):
    template = TemplateService(db).create_template("早安", "早安小鸡们")
    bad = client.post(
        "/api/tasks",
        json={"name": "坏任务", "template_id": template["id"], "chat_id": -1, "schedule_type": "daily", "schedule_time": "25:00"},
    )
    assert bad.status_code == 400

    task = client.post(
        "/api/tasks",
        json={"name": "早安", "template_id": template["id"], "chat_id": -1, "schedule_type": "daily", "schedule_time": "09:00"},
    ).json()["data"]
    monkeypatch.setattr(template_routes, "get_notifier", lambda: messenger)
    result = client.post(f"/api/tasks/{task['id']}/run").json()
    assert result == {"success": True, "data": {"id": task["id"], "sent": True}}
    assert messenger.texts(-1) == ["早安小鸡们"]


def test_export_endpoints(client, merchant):
    data = client.post("/api/export/all-data", json={"format": "csv"}).json()["data"]
    assert data["filename"].endswith(".zip")

    history = client.get("/api/export/history").json()["data"]
    assert [item["filename"] for item in history] == [data["filename"]]

    download = client.get(f"/api/export/download/{data['filename']}")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    assert client.get("/api/export/download/export_missing.zip").status_code == 404

    assert client.delete("/api/export/cleanup", params={"keep": 0}).json()["data"] == {"deleted": 1, "kept": 0}


def test_manual_broadcast(client, monkeypatch):
    notifier = FakeNotifier()
    monkeypatch.setattr(system_routes, "get_notifier", lambda: notifier)
    response = client.post("/api/manual-broadcast", json={"message": "今晚八点活动"})
    assert response.json()["success"] is True
    assert notifier.broadcasts == [("今晚八点活动", ["-100200300"])]
    assert client.post("/api/manual-broadcast", json={"message": "  "}).status_code == 400


def test_verify_password(client):
    assert client.post("/api/admin/verify-password", json={"password": "s3cret"}).json()["data"] == {"valid": True}
    response = client.post("/api/admin/verify-password", json={"password": "wrong"})
    assert response.status_code == 401
    assert response.json()["detail"] == "密码错误"
