from __future__ import annotations

import asyncio
import os
import time
from uuid import uuid4

import httpx

from app.infra.auth import create_access_token


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
        except httpx.HTTPError as exc:
            last_status = f"http_error: {exc}"
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}")


async def _admin_id(client: httpx.AsyncClient) -> str:
    response = await client.post(
        "/api/identity/bootstrap-admin",
        json={"username": "smoke-admin", "full_name": "Smoke Administrator"},
    )
    if response.status_code == 409:
        admin_id = os.getenv("SMOKE_ADMIN_ID")
        if not admin_id:
            raise RuntimeError("store already initialized; set SMOKE_ADMIN_ID to an administrator id")
        return admin_id
    _assert_status(response, 201)
    return str(response.json()["id"])


async def run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://localhost:8000")
    run_id = uuid4().hex[:8]
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")
        headers = _auth_headers(await _admin_id(client))

        ministry = await client.post(
            "/api/hierarchy/structure",
            json={"name": f"Smoke {run_id}", "unit_type": "ministry", "hierarchy_level": 1},
            headers=headers,
        )
        _assert_status(ministry, 201)
        unit_id = ministry.json()["id"]

        position = await client.post(
            "/api/hierarchy/positions",
            json={"organization_unit_id": unit_id, "title": "Министр"},
            headers=headers,
        )
        _assert_status(position, 201)
        user = await client.post(
            "/api/identity/users",
            json={"username": f"smoke-{run_id}", "full_name": "Smoke User"},
            headers=headers,
        )
        _assert_status(user, 201)
        user_id = user.json()["id"]

        appointment = await client.post(
            "/api/hierarchy/appointments",
            json={"user_id": user_id, "organization_unit_id": unit_id, "position_id": position.json()["id"]},
            headers=headers,
        )
        _assert_status(appointment, 201)

        info = await client.get(f"/api/hierarchy/users/{user_id}/hierarchy", headers=headers)
        _assert_status(info, 200)
        if info.json()["role"] != "minister":
            raise RuntimeError(f"unexpected derived role: {info.json()['role']}")

        dismissed = await client.put(
            f"/api/hierarchy/appointments/{appointment.json()['id']}/dismiss",
            json={"dismissal_reason": "smoke"},
            headers=headers,
        )
        _assert_status(dismissed, 200)
        removed = await client.delete(f"/api/hierarchy/structure/{unit_id}", headers=headers)
        _assert_status(removed, 200)
    print("smoke ok")


if __name__ == "__main__":
    asyncio.run(run())
