import os

import pytest
import requests

import org_sbom_scanner as scanner
from conftest import FakeResponse, contents_url, sbom_url


def test_sbom_wins_and_other_sources_are_never_requested(fake_session):
    fake_session.routes[sbom_url("acme", "web")] = FakeResponse(200, b'{"sbom": {}}')
    fake_session.routes[contents_url("acme", "web", "package-lock.json")] = FakeResponse(200, b"{}")

    content, source = scanner.fetch_manifest("acme", "web")

    assert source == scanner.SOURCE_SBOM
    assert content == b'{"sbom": {}}'
    assert fake_session.urls() == [sbom_url("acme", "web")]


def test_falls_back_to_lockfile(fake_session):
    fake_session.routes[contents_url("acme", "web", "package-lock.json")] = FakeResponse(200, b'{"lockfileVersion": 3}')
    fake_session.routes[contents_url("acme", "web", "package.json")] = FakeResponse(200, b"{}")

    content, source = scanner.fetch_manifest("acme", "web")

    assert source == scanner.SOURCE_LOCKFILE
    assert content == b'{"lockfileVersion": 3}'
    assert contents_url("acme", "web", "package.json") not in fake_session.urls()


def test_falls_back_to_package_json(fake_session):
    fake_session.routes[contents_url("acme", "web", "package.json")] = FakeResponse(200, b'{"name": "web"}')

    _content, source = scanner.fetch_manifest("acme", "web")

    assert source == scanner.SOURCE_MANIFEST
    assert fake_session.urls() == [
        sbom_url("acme", "web"),
        contents_url("acme", "web", "package-lock.json"),
        contents_url("acme", "web", "package.json"),
    ]


def test_empty_sbom_falls_through(fake_session):
    fake_session.routes[sbom_url("acme", "web")] = FakeResponse(200, b"")
    fake_session.routes[contents_url("acme", "web", "package-lock.json")] = FakeResponse(200, b"{}")

    _content, source = scanner.fetch_manifest("acme", "web")

    assert source == scanner.SOURCE_LOCKFILE


def test_network_error_falls_through(fake_session):
    fake_session.routes[sbom_url("acme", "web")] = requests.ConnectionError("reset")
    fake_session.routes[contents_url("acme", "web", "package.json")] = FakeResponse(200, b"{}")

    _content, source = scanner.fetch_manifest("acme", "web")

    assert source == scanner.SOURCE_MANIFEST


def test_no_source_returns_none(fake_session):
    fake_session.routes[sbom_url("acme", "web")] = FakeResponse(403, b'{"message": "forbidden"}')

    assert scanner.fetch_manifest("acme", "web") is None
    assert len(fake_session.calls) == 3


def test_contents_are_requested_raw(fake_session):
    scanner.fetch_repo_file("acme", "web", "package.json")

    _url, headers = fake_session.calls[0]
    assert headers == {"Accept": scanner.RAW_MEDIA_TYPE}


def test_manifest_file_is_removed_after_use(fake_session, workdir):
    fake_session.routes[contents_url("acme", "web", "package-lock.json")] = FakeResponse(200, b"lock")

    with scanner.manifest_file("acme", "web", workdir) as manifest:
        assert manifest.source_type == scanner.SOURCE_LOCKFILE
        assert manifest.path == os.path.join(workdir, "web.lock.json")
        with open(manifest.path, "rb") as f:
            assert f.read() == b"lock"

    assert not os.path.exists(manifest.path)
    assert os.listdir(workdir) == []


def test_manifest_file_is_removed_on_error(fake_session, workdir):
    fake_session.routes[sbom_url("acme", "web")] = FakeResponse(200, b"{}")

    with pytest.raises(RuntimeError):
        with scanner.manifest_file("acme", "web", workdir) as manifest:
            raise RuntimeError("matcher blew up")

    assert not os.path.exists(manifest.path)


def test_manifest_file_without_source_yields_none(fake_session, workdir):
    with scanner.manifest_file("acme", "web", workdir) as manifest:
        assert manifest is None
    assert os.listdir(workdir) == []
