"""Smoke tests for the typer CLI against a temporary database and blob root."""
from __future__ import annotations

import pytest
from typer.testing import CliRunner

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch):
    from facealbums.db.connection import close_db
    monkeypatch.setenv("FACEALBUMS_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("FACEALBUMS_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("FACEALBUMS_FACE_PRINTS", str(tmp_path / "prints"))
    for name in ("FACEALBUMS_STORAGE", "FACEALBUMS_ORACLE", "FACEALBUMS_PAGE_SIZE"):
        monkeypatch.delenv(name, raising=False)
    close_db()
    yield tmp_path
    close_db()


@pytest.fixture
def photos(tmp_path):
    folder = tmp_path / "party"
    (folder / "day2").mkdir(parents=True)
    (folder / "a.jpg").write_bytes(b"alice#1")
    (folder / "b.jpg").write_bytes(b"bob#1")
    (folder / "day2" / "c.jpg").write_bytes(b"alice#2")
    (folder / "notes.txt").write_text("not an image")
    return folder


class TestCli:
    def test_init_db(self, env):
        from facealbums.cli import app
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Database ready" in result.output
        assert (env / "cli.db").exists()

    def test_ingest_registers_images(self, env, photos):
        from facealbums.cli import app
        from facealbums.db.connection import get_db
        from facealbums.db.repository import Repository

        result = runner.invoke(app, ["ingest", str(photos), "--user", "u1", "--folder", "party"])
        assert result.exit_code == 0
        assert "Registered 3/3" in result.output

        # Running it again does not duplicate rows.
        runner.invoke(app, ["ingest", str(photos), "--user", "u1", "--folder", "party"])
        counts = Repository(get_db()).count_by_status("u1", "party")
        assert counts == {"UPLOADED_TO_S3": 3}
        assert (env / "blobs" / "u1" / "images" / "party" / "day2" / "c.jpg").exists()

    def test_create_collection_twice(self, env):
        from facealbums.cli import app
        first = runner.invoke(app, ["create-collection", "ns", "--user", "u1"])
        second = runner.invoke(app, ["create-collection", "ns"])
        assert "Created collection" in first.output
        assert "already exists" in second.output

    def test_process_then_albums_and_status(self, env, photos, monkeypatch):
        from conftest import FakeOracle

        from facealbums.cli import app
        from facealbums.pipeline import controller as controller_mod
        oracle = FakeOracle()
        monkeypatch.setattr(controller_mod, "get_oracle", lambda settings: oracle)

        runner.invoke(app, ["ingest", str(photos), "--user", "u1", "--folder", "party"])
        result = runner.invoke(
            app, ["process", "--user", "u1", "--folder", "party", "--namespace", "ns", "--page-size", "2"]
        )
        assert result.exit_code == 0, result.output
        assert "Image processing job completed" in result.output

        albums = runner.invoke(app, ["albums", "--user", "u1", "--namespace", "ns"])
        assert albums.exit_code == 0
        assert "Face ID" in albums.output

        status = runner.invoke(app, ["status", "--user", "u1"])
        assert status.exit_code == 0
        assert "FACES_INDEXED" in status.output

        from facealbums.db.connection import get_db
        from facealbums.db.repository import Repository
        runs = Repository(get_db()).recent_runs()
        assert [run["status"] for run in runs] == ["completed"]

    def test_process_requires_namespace(self, env):
        from facealbums.cli import app
        result = runner.invoke(app, ["process", "--user", "u1", "--folder", "f1", "--namespace", " "])
        assert result.exit_code == 1
        assert "INVALID_PARAMETERS" in result.output

    def test_bad_config_exits(self, env, monkeypatch):
        from facealbums.cli import app
        monkeypatch.setenv("FACEALBUMS_PAGE_SIZE", "lots")
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "CONFIG_ERROR" in result.output
