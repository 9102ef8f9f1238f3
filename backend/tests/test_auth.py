"""Tests for authentication endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_register_and_login(client: AsyncClient) -> None:
    # Register
    res = await client.post(
        "/api/v1/auth/register",
        json={"email": "Test@Changeflow.io", "password": "Secret123!", "full_name": "Test User"},
    )
    assert res.status_code == 201
    register_data = res.json()
    assert "access_token" in register_data
    assert register_data["token_type"] == "bearer"

    # Login
    res = await client.post(
        "/api/v1/auth/login",
        json={"email": "test@changeflow.io", "password": "Secret123!"},
    )
    assert res.status_code == 200
    token_data = res.json()
    assert token_data["token_type"] == "bearer"

    # Me
    headers = {"Authorization": f"Bearer {token_data['access_token']}"}
    res = await client.get("/api/v1/auth/me", headers=headers)
    assert res.status_code == 200
    me = res.json()
    assert me["email"] == "test@changeflow.io"
    assert me["full_name"] == "Test User"


@pytest.mark.asyncio
async def test_register_duplicate_email(client: AsyncClient) -> None:
    body = {"email": "dup@changeflow.io", "password": "Secret123!"}
    assert (await client.post("/api/v1/auth/register", json=body)).status_code == 201
    res = await client.post("/api/v1/auth/register", json=body)
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient) -> None:
    await client.post(
        "/api/v1/auth/register",
        json={"email": "wrong@changeflow.io", "password": "Right123!"},
    )
    res = await client.post(
        "/api/v1/auth/login",
        json={"email": "wrong@changeflow.io", "password": "WrongPwd!"},
    )
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_me_without_token(client: AsyncClient) -> None:
    res = await client.get("/api/v1/auth/me")
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_garbage_token_rejected(client: AsyncClient) -> None:
    res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
