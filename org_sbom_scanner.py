#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
GitHub Organization SBOM Threat Scanner

Scannt alle nicht archivierten Repositories einer GitHub-Organisation (oder
eines Users) auf kompromittierte npm-Pakete. Pro Repository wird genau eine
Dependency-Quelle geladen, in dieser Reihenfolge:

1. Dependency Graph SBOM (von GitHub generiert)
2. package-lock.json
3. package.json (nur flacher Scan)

Der eigentliche Abgleich gegen die Liste kompromittierter package@version Paare
wird an ein externes Matcher-Skript delegiert. Dessen Ausgabe enthält den
Marker "DANGER", wenn ein Treffer gefunden wurde.

Anforderungen:
- GITHUB_TOKEN oder GH_TOKEN, alternativ eine angemeldete GitHub CLI (gh)
- Matcher-Skript (Standard: ./sbom_threat_matcher.py)
- Optional: openpyxl (für Excel-Export)

Ausgabe: Terminal-Report + scan_report_<timestamp>.log (+ optional CSV/Excel)
"""

import argparse
import contextlib
import csv
import dataclasses
import itertools
import os
import re
import shutil
import subprocess
import sys
import time
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import requests

try:
    from openpyxl import Workbook
except ImportError:
    Workbook = None  # type: ignore


# Konstanten
GITHUB_API = "https://api.github.com"
RAW_MEDIA_TYPE = "application/vnd.github.raw"

GITHUB_API_PAGE_SIZE = 100
GITHUB_API_DEFAULT_WAIT_SECONDS = 60
REPO_LIST_LIMIT = 4000

DEFAULT_CHECKER = "./sbom_threat_matcher.py"
DEFAULT_TEMP_DIR = "temp_scan_artifacts"
DANGER_MARKER = "DANGER"
REPORT_DELIMITER = "-------------------"

EXCEL_MAX_COLUMN_WIDTH = 80
EXCEL_COLUMN_PADDING = 2

SOURCE_SBOM = "Dependency Graph SBOM"
SOURCE_LOCKFILE = "package-lock.json"
SOURCE_MANIFEST = "package.json (Shallow Scan)"

STATUS_CLEAN = "clean"
STATUS_DANGEROUS = "dangerous"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"

RULE = "=" * 54
SEPARATOR = "-" * 51

# ANSI colours, only used when stdout is a terminal
RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
CYAN = "\033[0;36m"
NC = "\033[0m"


SESSION = requests.Session()
SESSION.headers.update({
    "Accept": "application/vnd.github+json",
    "User-Agent": "org-sbom-scanner/1.0",
})


@dataclasses.dataclass(frozen=True)
class ManifestSource:
    """Eine Dependency-Quelle: Label für den Report, Dateiendung, Fetch-Funktion."""
    label: str
    suffix: str
    fetch: Callable[[str, str], Optional[bytes]]


@dataclasses.dataclass(frozen=True)
class Manifest:
    """Temporär abgelegte Dependency-Datei eines Repositories."""
    path: str
    source_type: str


@dataclasses.dataclass(frozen=True)
class Verdict:
    """Ergebnis eines Matcher-Aufrufs."""
    output: str
    returncode: Optional[int]
    dangerous: bool
    stderr: str = ""

    @property
    def failed(self) -> bool:
        # a positive match wins over a non-zero exit status
        return not self.dangerous and self.returncode != 0


@dataclasses.dataclass(frozen=True)
class ScanResult:
    owner: str
    repo: str
    status: str
    source_type: str = ""
    output: str = ""


@dataclasses.dataclass
class ScanSummary:
    """Aggregiertes Ergebnis eines Laufs."""
    owner: str
    report_file: str
    scanned: int = 0
    infected: int = 0
    skipped: int = 0
    errors: int = 0
    results: List[ScanResult] = dataclasses.field(default_factory=list)

    def by_status(self, status: str) -> List[ScanResult]:
        return [r for r in self.results if r.status == status]


# GitHub API Helpers

def _token_from_env() -> Optional[str]:
    return os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN")


def _token_from_gh_cli() -> Optional[str]:
    """Fragt das Token der angemeldeten GitHub CLI ab (`gh auth token`)."""
    try:
        proc = subprocess.run(["gh", "auth", "token"], capture_output=True, text=True, check=False)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def require_token() -> None:
    """Prüft ob ein GitHub-Token vorhanden ist und setzt Authorization-Header."""
    token = _token_from_env() or _token_from_gh_cli()
    if not token:
        print("ERROR: No GitHub credential. Export GITHUB_TOKEN (or GH_TOKEN) or run 'gh auth login'.",
              file=sys.stderr)
        sys.exit(1)
    SESSION.headers["Authorization"] = f"Bearer {token}"


def paginate(url: str, params: Optional[dict] = None) -> Iterable[dict]:
    """
    Paginiert durch GitHub API Responses.
    Handhabt Rate-Limiting automatisch via X-RateLimit-Reset Header.
    """
    params = dict(params or {})
    params.setdefault("per_page", GITHUB_API_PAGE_SIZE)

    while url:
        r = SESSION.get(url, params=params)

        if r.status_code == 403 and "rate limit" in r.text.lower():
            reset = r.headers.get("X-RateLimit-Reset")
            wait = max(0, int(reset) - int(time.time())) if reset else GITHUB_API_DEFAULT_WAIT_SECONDS
            print(f"Rate limited. Sleeping {wait}s...", file=sys.stderr)
            time.sleep(wait)
            continue

        r.raise_for_status()
        data = r.json()

        if isinstance(data, list):
            yield from data
        else:
            yield data

        # Parse Link header for next page
        link = r.headers.get("Link", "")
        next_url = None
        if link:
            for part in link.split(","):
                m = re.search(r'<([^>]+)>; rel="next"', part)
                if m:
                    next_url = m.group(1)
                    break

        url = next_url
        params = None


def get_owner_repos(owner: str, limit: int = REPO_LIST_LIMIT) -> List[dict]:
    """
    Holt alle Repositories einer Organisation.
    Ist `owner` keine Organisation (404), wird die User-API verwendet.
    """
    try:
        pages = paginate(f"{GITHUB_API}/orgs/{owner}/repos",
                         params={"type": "all", "sort": "full_name"})
        return list(itertools.islice(pages, limit))
    except requests.HTTPError as e:
        if e.response is None or e.response.status_code != 404:
            raise

    pages = paginate(f"{GITHUB_API}/users/{owner}/repos",
                     params={"type": "owner", "sort": "full_name"})
    return list(itertools.islice(pages, limit))


def list_scan_targets(repos: Iterable[dict], include_archived: bool = False) -> List[str]:
    """Reduziert Repository-Metadaten auf Namen, archivierte Repos werden übersprungen."""
    return [repo["name"] for repo in repos if include_archived or not repo.get("archived")]


# Manifest Fetcher

def _get_content(url: str, headers: Optional[dict] = None) -> Optional[bytes]:
    """GET mit stillem Fehlschlag: None bei Netzwerkfehler, Fehlerstatus oder leerem Body."""
    try:
        r = SESSION.get(url, headers=headers)
    except requests.RequestException:
        return None

    if r.status_code != 200 or not r.content:
        return None
    return r.content


def fetch_sbom(owner: str, repo: str) -> Optional[bytes]:
    """SPDX-SBOM aus dem Dependency Graph."""
    return _get_content(f"{GITHUB_API}/repos/{owner}/{repo}/dependency-graph/sbom")


def fetch_repo_file(owner: str, repo: str, path: str) -> Optional[bytes]:
    """Rohinhalt einer Datei im Default-Branch (Contents API, raw media type)."""
    return _get_content(f"{GITHUB_API}/repos/{owner}/{repo}/contents/{path}",
                        headers={"Accept": RAW_MEDIA_TYPE})


# Reihenfolge = Priorität
MANIFEST_SOURCES: Tuple[ManifestSource, ...] = (
    ManifestSource(SOURCE_SBOM, ".sbom.json", fetch_sbom),
    ManifestSource(SOURCE_LOCKFILE, ".lock.json",
                   lambda owner, repo: fetch_repo_file(owner, repo, "package-lock.json")),
    ManifestSource(SOURCE_MANIFEST, ".package.json",
                   lambda owner, repo: fetch_repo_file(owner, repo, "package.json")),
)


def _first_available(
    owner: str,
    repo: str,
    sources: Iterable[ManifestSource]
) -> Optional[Tuple[bytes, ManifestSource]]:
    """
    Liefert Inhalt und Quelle der ersten Quelle mit nicht-leerem Inhalt.
    Spätere Quellen werden nur angefragt, wenn alle vorherigen leer blieben.
    """
    # generator keeps the fetches lazy
    attempts = ((source.fetch(owner, repo), source) for source in sources)
    return next(((content, source) for content, source in attempts if content), None)


def fetch_manifest(owner: str, repo: str) -> Optional[Tuple[bytes, str]]:
    """Liefert (Inhalt, Quellen-Label) der ersten verfügbaren Quelle oder None."""
    found = _first_available(owner, repo, MANIFEST_SOURCES)
    if found is None:
        return None
    content, source = found
    return content, source.label


@contextlib.contextmanager
def manifest_file(owner: str, repo: str, workdir: str) -> Iterator[Optional[Manifest]]:
    """
    Lädt das Manifest und legt es unter `workdir` ab.
    Die Datei wird beim Verlassen des Blocks immer gelöscht, auch bei Exceptions.
    """
    found = _first_available(owner, repo, MANIFEST_SOURCES)
    if found is None:
        yield None
        return

    content, source = found
    path = os.path.join(workdir, f"{repo}{source.suffix}")
    try:
        with open(path, "wb") as f:
            f.write(content)
        yield Manifest(path, source.label)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


# Vulnerability Matcher

class ScriptMatcher:
    """
    Externer Matcher: `<interpreter> <script> <manifest> <vuln_list>`.
    Die Ausgabe wird nur auf den Marker geprüft, der Abgleich selbst ist Sache des Skripts.
    """

    def __init__(self, script: str, interpreter: str = sys.executable, marker: str = DANGER_MARKER):
        self.script = script
        self.interpreter = interpreter
        self.marker = marker

    def check(self, manifest_path: str, vuln_list: str) -> Verdict:
        cmd = [self.interpreter, self.script, manifest_path, vuln_list]
        try:
            proc = subprocess.run(cmd, capture_output=True, encoding="utf-8", errors="replace", check=False)
        except OSError as e:
            return Verdict(output="", returncode=None, dangerous=False, stderr=str(e))

        output = proc.stdout or ""
        return Verdict(
            output=output,
            returncode=proc.returncode,
            dangerous=self.marker in output,
            stderr=proc.stderr or "",
        )


# Report Helpers

def report_path(directory: str = ".", now: Optional[datetime] = None) -> str:
    """scan_report_YYYYmmdd_HHMMSS.log im angegebenen Verzeichnis."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return os.path.join(directory, f"scan_report_{stamp}.log")


def append_report(path: str, result: ScanResult) -> None:
    """Hängt einen Treffer an das Report-Log an."""
    output = result.output if result.output.endswith("\n") else result.output + "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"repo: {result.repo} ({result.source_type})\n")
        f.write(output)
        f.write(REPORT_DELIMITER + "\n")


def write_results(results: List[ScanResult], out_path: str) -> None:
    """Schreibt Ergebnisse in CSV oder Excel, je nach Dateiendung."""
    ext = os.path.splitext(out_path)[1].lower()

    if ext == ".xlsx":
        _write_excel(results, out_path)
    else:
        _write_csv(results, out_path)


RESULT_HEADERS = ["owner", "repo", "source", "status"]


def _result_row(r: ScanResult) -> List[str]:
    return [r.owner, r.repo, r.source_type, r.status]


def _write_csv(results: List[ScanResult], out_path: str) -> None:
    """Schreibt CSV mit Semikolon-Trenner und UTF-8 BOM (für deutsches Excel)."""
    with open(out_path, "w", newline="", encoding="utf-8-sig") as f:
        writer = csv.writer(f, delimiter=';', quoting=csv.QUOTE_MINIMAL)
        writer.writerow(RESULT_HEADERS)
        for r in results:
            writer.writerow(_result_row(r))


def _write_excel(results: List[ScanResult], out_path: str) -> None:
    """Schreibt Excel-Datei mit automatischer Spaltenbreite."""
    if Workbook is None:
        raise RuntimeError("openpyxl nicht installiert. Bitte 'pip install openpyxl' oder CSV nutzen.")

    wb = Workbook()
    ws = wb.active
    ws.title = "Scan"

    ws.append(RESULT_HEADERS)
    for r in results:
        ws.append(_result_row(r))

    # Auto-width mit Max-Limit
    for col in ws.columns:
        col_letter = col[0].column_letter
        max_len = max(len(str(cell.value or "")) for cell in col)
        ws.column_dimensions[col_letter].width = min(max_len + EXCEL_COLUMN_PADDING, EXCEL_MAX_COLUMN_WIDTH)

    wb.save(out_path)


# Scan Orchestrator

def _colour(text: str, colour: str) -> str:
    if not sys.stdout.isatty():
        return text
    return f"{colour}{text}{NC}"


def check_prerequisites(checker: str) -> None:
    """Bricht mit Exit-Code 1 ab und nennt alle fehlenden Voraussetzungen."""
    missing = []
    if not _token_from_env() and shutil.which("gh") is None:
        missing.append("GitHub CLI (gh) is not installed and GITHUB_TOKEN/GH_TOKEN is not set.")
    if not os.path.isfile(checker):
        missing.append(f"Matcher script {checker} not found.")

    for problem in missing:
        print(f"ERROR: {problem}", file=sys.stderr)
    if missing:
        sys.exit(1)


def _scan_repo(owner: str, repo: str, vuln_list: str, matcher: ScriptMatcher, workdir: str) -> ScanResult:
    with manifest_file(owner, repo, workdir) as manifest:
        if manifest is None:
            return ScanResult(owner, repo, STATUS_SKIPPED)

        print(f"   ↳ Source: {manifest.source_type}")
        verdict = matcher.check(manifest.path, vuln_list)

    if verdict.dangerous:
        status = STATUS_DANGEROUS
    elif verdict.failed:
        status = STATUS_ERROR
    else:
        status = STATUS_CLEAN

    output = verdict.output if status != STATUS_ERROR else (verdict.output + verdict.stderr)
    return ScanResult(owner, repo, status, manifest.source_type, output)


def scan_organization(
    owner: str,
    vuln_list: str,
    matcher: ScriptMatcher,
    *,
    workdir: str = DEFAULT_TEMP_DIR,
    report_file: Optional[str] = None,
    include_archived: bool = False,
    allow_empty: bool = False,
    limit: int = 0,
) -> ScanSummary:
    """
    Scannt alle Repositories von `owner`, sequenziell.

    Workflow pro Repository:
    1. Manifest laden (SBOM -> package-lock.json -> package.json)
    2. Matcher aufrufen und Ausgabe auf den Marker prüfen
    3. Zähler erhöhen, Treffer ins Report-Log schreiben

    Eine leere Repository-Liste ist fatal, außer `allow_empty` ist gesetzt.
    """
    report_file = report_file or report_path()

    print(f"🔍 Fetching repository list for {owner}...")
    try:
        repos = list_scan_targets(get_owner_repos(owner), include_archived=include_archived)
    except requests.RequestException as e:
        print(f"WARN: Cannot list repositories for {owner}: {e}", file=sys.stderr)
        repos = []

    if not repos and not allow_empty:
        print("ERROR: No repositories found or access denied.", file=sys.stderr)
        sys.exit(1)

    if not os.path.exists(vuln_list):
        print(f"WARN: Vulnerability list not found: {vuln_list}", file=sys.stderr)

    # Report wird einmal pro Lauf angelegt, auch wenn nichts gefunden wird
    os.makedirs(os.path.dirname(report_file) or ".", exist_ok=True)
    open(report_file, "a", encoding="utf-8").close()

    results: List[ScanResult] = []
    scanned = infected = skipped = errors = 0

    os.makedirs(workdir, exist_ok=True)
    try:
        for repo in repos:
            if limit and scanned >= limit:
                break

            print(SEPARATOR)
            print(f"Processing: {_colour(repo, YELLOW)}")

            try:
                result = _scan_repo(owner, repo, vuln_list, matcher, workdir)
            except Exception as e:
                print(f"WARN: scan failed for {repo}: {e}", file=sys.stderr)
                results.append(ScanResult(owner, repo, STATUS_ERROR, output=str(e)))
                errors += 1
                continue
            results.append(result)

            if result.status == STATUS_SKIPPED:
                print(_colour("   ⚠️  Skipped: No SBOM, package-lock, or package.json found.", YELLOW))
                skipped += 1
                continue

            scanned += 1
            if result.status == STATUS_DANGEROUS:
                print(_colour("   🚨 VULNERABILITIES FOUND!", RED))
                print(result.output.rstrip("\n"))
                append_report(report_file, result)
                infected += 1
            elif result.status == STATUS_ERROR:
                print(_colour("   ❗ Matcher error", RED))
                print(f"WARN: matcher failed for {repo}: {result.output.strip()}", file=sys.stderr)
                errors += 1
            else:
                print(_colour("   ✅ Clean", GREEN))
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    return ScanSummary(owner, report_file, scanned, infected, skipped, errors, results)


def print_summary(summary: ScanSummary) -> None:
    print("\n" + _colour(RULE, CYAN))
    print(_colour("               FINAL MISSION REPORT", CYAN))
    print(_colour(RULE, CYAN))
    print(f"Repositories Scanned: {summary.scanned}")
    print(f"Repositories Skipped: {summary.skipped}")

    if summary.errors:
        print(f"Errors: {summary.errors}")
        for r in summary.by_status(STATUS_ERROR):
            print(f"  - {r.repo} ({r.source_type})" if r.source_type else f"  - {r.repo}")

    if summary.infected == 0:
        print(_colour("RESULT: ALL SYSTEMS CLEAN. No compromised packages found.", GREEN))
        return

    print(_colour("RESULT: COMPROMISED PACKAGES DETECTED.", RED))
    print(_colour(f"Infected Repositories: {summary.infected}", RED))
    print(f"See details below or in {summary.report_file}:")
    print("")
    with open(summary.report_file, "r", encoding="utf-8") as f:
        print(f.read(), end="")


# CLI

class _ArgumentParser(argparse.ArgumentParser):
    """Usage-Fehler enden mit Exit-Code 1 statt 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"ERROR: {message}", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="org-sbom-scanner",
        description="GitHub organization scanner for known-compromised npm packages (SBOM -> lockfile -> package.json)",
        epilog="Example: org-sbom-scanner my-company-org ./shai_hulud_list.txt",
    )
    parser.add_argument("org", help="GitHub organization or user name")
    parser.add_argument("vuln_list", help="Path to the list of compromised packages")
    parser.add_argument("--checker", default=DEFAULT_CHECKER,
                        help=f"Matcher script (default: {DEFAULT_CHECKER})")
    parser.add_argument("--marker", default=DANGER_MARKER,
                        help=f"Substring in the matcher output that flags a repository (default: {DANGER_MARKER})")
    parser.add_argument("--temp-dir", default=DEFAULT_TEMP_DIR,
                        help=f"Directory for downloaded manifests, removed afterwards (default: {DEFAULT_TEMP_DIR})")
    parser.add_argument("--report-dir", default=".",
                        help="Directory for the scan_report_<timestamp>.log file")
    parser.add_argument("--include-archived", action="store_true",
                        help="Include archived repositories")
    parser.add_argument("--allow-empty", action="store_true",
                        help="Report '0 scanned' instead of failing when no repositories are found")
    parser.add_argument("--limit", type=int, default=0,
                        help="Limit scanned repositories for testing")
    parser.add_argument("--out",
                        help="Optional results export (.xlsx or .csv)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    check_prerequisites(args.checker)
    require_token()

    matcher = ScriptMatcher(args.checker, marker=args.marker)
    report_file = report_path(args.report_dir)

    for line in (RULE, "   GitHub Organization Vulnerability Scanner",
                 f"   Target: {args.org}", f"   List:   {args.vuln_list}", RULE):
        print(_colour(line, CYAN))

    summary = scan_organization(
        args.org,
        args.vuln_list,
        matcher,
        workdir=args.temp_dir,
        report_file=report_file,
        include_archived=args.include_archived,
        allow_empty=args.allow_empty,
        limit=args.limit,
    )
    print_summary(summary)

    if not args.out:
        return

    ext = os.path.splitext(args.out)[1].lower()
    try:
        write_results(summary.results, args.out)
        format_name = "Excel" if ext == ".xlsx" else "CSV"
        print(f"\n{format_name} geschrieben: {args.out}")
    except Exception as e:
        print(f"WARN: Export nach '{args.out}' fehlgeschlagen: {e}", file=sys.stderr)
        fallback = "scan_results.csv"
        _write_csv(summary.results, fallback)
        print(f"CSV-Fallback geschrieben: {fallback}")


if __name__ == "__main__":
    main()
