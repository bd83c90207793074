from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest

from app import Employee, app as flask_app, db


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_employee(app, code: str, name: str, password: str = "secret") -> int:
    with app.app_context():
        employee = Employee(code=code, name=name)
        employee.set_password(password)
        db.session.add(employee)
        db.session.commit()
        return employee.id


def csrf_token(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
        if not token:
            token = sess["csrf_token"] = "test-csrf-token"
        return token


def login(client, code: str, password: str = "secret"):
    client.get("/login")
    return client.post("/login", data={"csrf_token": csrf_token(client), "code": code, "password": password})


@pytest.fixture
def alice(app) -> int:
    return make_employee(app, "E001", "山田太郎")


@pytest.fixture
def bob(app) -> int:
    return make_employee(app, "E002", "佐藤花子")
