"""Shared test fixtures: a fake GitHub API behind the module-level session."""

import json

import pytest
import requests

import org_sbom_scanner as scanner

API = scanner.GITHUB_API


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None):
        self.status_code = status_code
        if isinstance(body, (list, dict)):
            body = json.dumps(body).encode("utf-8")
        elif isinstance(body, str):
            body = body.encode("utf-8")
        self.content = body
        self.headers = headers or {}

    @property
    def text(self):
        return self.content.decode("utf-8")

    def json(self):
        return json.loads(self.content)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Routes GET requests by URL; unknown URLs answer 404."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.headers = {}

    def get(self, url, params=None, headers=None):
        self.calls.append((url, headers))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, b'{"message": "Not Found"}')
        if isinstance(route, Exception):
            raise route
        return route

    def urls(self):
        return [url for url, _headers in self.calls]


class FakeMatcher:
    """Flags a manifest as dangerous when it contains one of `bad` package names."""

    def __init__(self, bad=(), marker=scanner.DANGER_MARKER, returncode=0):
        self.bad = tuple(bad)
        self.marker = marker
        self.returncode = returncode
        self.calls = []

    def check(self, manifest_path, vuln_list):
        with open(manifest_path, "r", encoding="utf-8") as f:
            content = f.read()
        self.calls.append((manifest_path, vuln_list))
        hits = [name for name in self.bad if name in content]
        if hits:
            output = "".join(f"{self.marker}: {name} is compromised\n" for name in hits)
            return scanner.Verdict(output=output, returncode=1, dangerous=True)
        return scanner.Verdict(output="No matches.\n", returncode=self.returncode, dangerous=False,
                               stderr="Traceback: boom\n" if self.returncode else "")


def sbom_url(owner, repo):
    return f"{API}/repos/{owner}/{repo}/dependency-graph/sbom"


def contents_url(owner, repo, path):
    return f"{API}/repos/{owner}/{repo}/contents/{path}"


def repos_url(owner, kind="orgs"):
    return f"{API}/{kind}/{owner}/repos"


@pytest.fixture
def fake_session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(scanner, "SESSION", session)
    return session


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "artifacts"
    path.mkdir()
    return str(path)


@pytest.fixture
def three_repo_org(fake_session):
    """acme: A has an SBOM with a bad package, B only a package.json, C nothing, D is archived."""
    fake_session.routes.update({
        repos_url("acme"): FakeResponse(200, [
            {"name": "repo-a", "archived": False},
            {"name": "repo-b", "archived": False},
            {"name": "repo-c", "archived": False},
            {"name": "repo-d", "archived": True},
        ]),
        sbom_url("acme", "repo-a"): FakeResponse(200, {"sbom": {"packages": [{"name": "npm:evil-pkg"}]}}),
        contents_url("acme", "repo-b", "package.json"): FakeResponse(200, {"dependencies": {"left-pad": "1.3.0"}}),
    })
    return fake_session
