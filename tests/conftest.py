import json
import sqlite3
from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from jpgtickets.config import Settings
from jpgtickets.infra import timings
from jpgtickets.server import create_app


CPF = "123.456.789-09"

CREATE_PAYLOAD = {
    "amount": 10.0,
    "description": "Inscrição Copa JPG",
    "payerEmail": "jogador@example.com",
    "payerName": "João da Silva",
    "payerDocumentId": CPF,
}


class FakeMercadoPago:
    """In-memory payments API, served through httpx.MockTransport."""

    def __init__(self):
        self.charges = {}
        self.requests = []
        self.fail: Optional[object] = None  # status code, or "timeout"
        self.fail_body = {"message": "internal_error"}
        self.omit_pix = False
        self._next_id = 1000

    def add_charge(self, status="pending", external_reference=None):
        self._next_id += 1
        cid = str(self._next_id)
        self.charges[cid] = {
            "id": int(cid),
            "status": status,
            "external_reference": external_reference,
        }
        return cid

    def set_status(self, charge_id, status):
        self.charges[str(charge_id)]["status"] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail:
            return httpx.Response(self.fail, json=self.fail_body)

        path = request.url.path
        if request.method == "POST" and path == "/v1/payments":
            body = json.loads(request.content)
            cid = self.add_charge("pending", body.get("external_reference"))
            charge = dict(self.charges[cid])
            charge["date_of_expiration"] = "2030-01-01T00:30:00.000-03:00"
            if not self.omit_pix:
                charge["point_of_interaction"] = {
                    "transaction_data": {
                        "qr_code": f"00020126PIX{cid}",
                        "qr_code_base64": "iVBORw0KGgo=",
                    }
                }
            return httpx.Response(201, json=charge)

        if request.method == "GET" and path.startswith("/v1/payments/"):
            cid = path.rsplit("/", 1)[-1]
            charge = self.charges.get(cid)
            if charge is None:
                return httpx.Response(404,
                                      json={"message": "Payment not found"})
            return httpx.Response(200, json=charge)

        return httpx.Response(404, json={"message": "unknown route"})

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    def count(self, method):
        return sum(1 for r in self.requests if r.method == method)


@pytest.fixture(autouse=True)
def _clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jpgtickets.db"


@pytest.fixture
def settings(db_path):
    return Settings(
        database_url=f"sqlite:///{db_path}",
        mp_access_token="TEST-prod-token",
        mp_api_base="https://api.mercadopago.test",
        public_base_url="https://tickets.example.com/",
        session_secret="test-session-secret",
    )


@pytest.fixture
def mp():
    return FakeMercadoPago()


@pytest.fixture
def make_client(mp):
    clients = []

    def _make(settings):
        app = create_app(settings, transport=httpx.MockTransport(mp.handler))
        c = TestClient(app)
        c.__enter__()
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)


@pytest.fixture
def db(db_path):
    """Sync handle on the same sqlite file, for arranging odd states."""
    def _exec(sql, params=()):
        conn = sqlite3.connect(db_path)
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.fetchall()
        finally:
            conn.close()
    return _exec


# ----------------------------
# API helpers
# ----------------------------
def login(client):
    r = client.post("/admin/login",
                    data={"username": "admin", "password": "supasecret"})
    assert r.status_code == 200, r.text


def logout(client):
    client.get("/admin/logout")


def new_tournament(client, **overrides):
    payload = {
        "name": "Copa JPG",
        "game_mode": "solo",
        "entry_fee": 10.0,
        "max_participants": 4,
        "status": "open",
    }
    payload.update(overrides)
    login(client)
    try:
        r = client.post("/api/tournaments", json=payload)
    finally:
        logout(client)
    assert r.status_code == 200, r.text
    return r.json()


def new_participation(client, tournament_id, user_id="user-1", **partners):
    r = client.post("/api/participations", json={
        "user_id": user_id, "tournament_id": tournament_id, **partners,
    })
    assert r.status_code == 200, r.text
    return r.json()


def create_charge(client, participation_id, **overrides):
    payload = dict(CREATE_PAYLOAD, participationId=participation_id)
    payload.update(overrides)
    return client.post("/payments/create", json=payload)


def notify(client, charge_id, kind="payment", **kw):
    body = {"type": kind, "data": {"id": str(charge_id)}}
    if kind == "payment":
        body["action"] = "payment.updated"
    return client.post("/payments/webhook", json=body, **kw)


def get_participation(client, participation_id):
    r = client.get(f"/api/participations/{participation_id}")
    assert r.status_code == 200, r.text
    return r.json()


def status(client, participation_id):
    return client.post("/payments/status",
                       json={"participationId": participation_id})


@pytest.fixture
def tournament(client):
    return new_tournament(client)


@pytest.fixture
def participation(client, tournament):
    return new_participation(client, tournament["id"])
