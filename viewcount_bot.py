#!/usr/bin/env python3
"""
ViewCountBot
========================================

A bot that keeps view counts on song pages up to date. It:

* Lists every page transcluding the song box template (or reads a list file)
* Extracts ``{{v|PP|views}}`` and ``{{l|PP|id}}`` template pairs
* Fetches the current view count of each linked video from its provider
* Rewrites the ``{{v}}`` template when the displayed (rounded) count changed
* Saves the page only when something actually changed

Views and links are paired per provider in document order: the Nth link of
a provider takes the Nth view count of that provider.  Updates are only made
when the rounded value shown by the ``{{v}}`` template would change, so small
fluctuations never cause edits.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Standard library imports
# ---------------------------------------------------------------------------
import argparse
import http.cookiejar
import logging
import os
import re
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from functools import reduce
from typing import Deque, Dict, Iterable, List, Optional

# ---------------------------------------------------------------------------
# Third‑party dependencies
# ---------------------------------------------------------------------------
import mwclient
import mwclient.errors
import requests

from viewcount_providers import (
    Provider,
    ProviderAdapter,
    ProviderError,
    QuotaExceeded,
    build_registry,
    load_credentials,
)

###############################################################################
# Configuration                                                               #
###############################################################################

# Default configuration values
DEFAULT_CFG = {
    "SITE": "vocaloid.fandom.com",
    "API_PATH": "/",
    "BOT_USER": "BotUser@PasswordName",
    "BOT_PASSWORD": "",
    "USER_AGENT": "ViewCountBot/1.0 (view count updater)",
    "SCRAPER_USER_AGENT": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "SONG_TEMPLATE": "Template:Song box 2",
    "LIST_FILE": "list.txt",
    "SESSION_FILE": "~/viewcountbot/cookies/cookies.txt",
    "EDIT_SUMMARY": "Updating view count (automatic)",
    "REQUEST_TIMEOUT": 30,
    "RUN_INTERVAL": 86400,
    "YOUTUBE_API_KEY": "",
    "YOUTUBE_TOKEN_FILE": "",
    "VIMEO_TOKEN": "",
    "LOG_DIR": "",
}

# Global configuration dictionary
CFG: Dict[str, object] = {}

###############################################################################
# Logging                                                                     #
###############################################################################

# ─── INFO→stdout, WARNING+→stderr, optional file log ─────────────────────────
class MaxLevelFilter(logging.Filter):
    """Allow through only records <= a given level."""
    def __init__(self, level: int):
        super().__init__()
        self.max_level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level

LOG = logging.getLogger("viewcountbot")
LOG.setLevel(os.getenv("LOG_LEVEL", "INFO"))

# Handler for INFO and DEBUG → stdout
h_info = logging.StreamHandler(sys.stdout)
h_info.setLevel(logging.DEBUG)
h_info.addFilter(MaxLevelFilter(logging.INFO))

# Handler for WARNING and above → stderr
h_err = logging.StreamHandler(sys.stderr)
h_err.setLevel(logging.WARNING)

fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
h_info.setFormatter(fmt)
h_err.setFormatter(fmt)

LOG.addHandler(h_info)
LOG.addHandler(h_err)


def add_file_log(log_dir: str) -> None:
    """Also append everything to ``<log_dir>/main.log``."""
    log_dir = os.path.expanduser(log_dir)
    os.makedirs(log_dir, exist_ok=True)
    h_file = logging.FileHandler(os.path.join(log_dir, "main.log"), encoding="utf-8")
    h_file.setLevel(logging.DEBUG)
    h_file.setFormatter(fmt)
    LOG.addHandler(h_file)

###############################################################################
# Regex helpers & constants                                                   #
###############################################################################

VIEWS_FIELD_RE = re.compile(r"\|\s*views\s*=\s*([^\n]+)\n")
LINKS_FIELD_RE = re.compile(r"\|\s*links\s*=\s*([^\n]+)\n")
VIEW_RE        = re.compile(r"\{\{v\|(\w{2})\|([^}]+)\}\}")
LINK_RE        = re.compile(r"\{\{l\|(\w{2})\|([^}|]+)(?:\|([^}]+))?\}\}")
SEPARATORS_RE  = re.compile(r"[,.\s]")

UNSUPPORTED = "unsupported"

###############################################################################
# Rounding policy                                                             #
###############################################################################

def round_display(n: Optional[int]) -> str:
    """
    Replicate the ``{{v}}`` template's own display rounding.

    ======  =====================================
    digits  shown as
    ======  =====================================
    1       exact value
    2       nearest 10 (halves round up)
    3       last digit zeroed
    4-6     last two digits zeroed
    7-8     last three digits zeroed
    9+      ``"unsupported"``
    ======  =====================================

    ``None`` stands for a recorded count that could not be parsed and is
    also reported as ``"unsupported"``.
    """
    if n is None:
        return UNSUPPORTED
    s = str(n)
    digits = len(s)
    if digits == 1:
        return s
    if digits == 2:
        return str((n + 5) // 10 * 10)
    if digits == 3:
        return s[:-1] + "0"
    if digits <= 6:
        return s[:-2] + "00"
    if digits <= 8:
        return s[:-3] + "000"
    return UNSUPPORTED


def views_changed(old: Optional[int], new: int) -> bool:
    """True if the displayed value differs; an unparsable ``old`` always does."""
    if old is None:
        return True
    return round_display(old) != round_display(new)


def commafy(n: int) -> str:
    """1234567 -> '1,234,567'"""
    return f"{n:,}"

###############################################################################
# Dataclasses                                                                 #
###############################################################################

@dataclass
class PageTask:
    title: str
    text: str
    edit_token: str


@dataclass
class ViewEntry:
    """One ``{{v|PP|value}}`` occurrence, with its span in the document."""
    provider: Provider
    raw: str
    views: Optional[int]
    start: int
    end: int
    suffix: str = ""


@dataclass
class LinkEntry:
    provider: Provider
    video_id: str
    label: Optional[str] = None


@dataclass
class Match:
    provider: Provider
    video_id: str
    recorded_views: Optional[int]
    view: ViewEntry


@dataclass(frozen=True)
class Substitution:
    start: int
    end: int
    text: str


class PageOutcome(Enum):
    """How a page ended up after processing."""
    NO_MATCHES = "no matches"
    UNCHANGED = "unchanged"
    EDITED = "edited"
    EDIT_FAILED = "edit failed"
    DRY_RUN = "dry run"


@dataclass(frozen=True)
class RunConfig:
    domain: str
    use_list_file: bool = False
    no_edit: bool = False
    no_bot_flag: bool = False
    api_path: str = "/"
    list_file: str = "list.txt"
    edit_summary: str = "Updating view count (automatic)"
    song_template: str = "Template:Song box 2"


@dataclass(frozen=True)
class RunContext:
    """Everything the pipeline needs, passed explicitly down the call chain."""
    site: mwclient.Site
    config: RunConfig
    registry: Dict[Provider, ProviderAdapter]
    log: logging.Logger = LOG

###############################################################################
# Template extraction                                                         #
###############################################################################

def parse_views(value: str) -> tuple[Optional[int], str]:
    """
    Parse the value part of a ``{{v}}`` template.

    Returns ``(count, suffix)`` where ``suffix`` is the trailing ``|label``
    annotation (including the pipe) and ``count`` is None when the remaining
    text is not a number once separators are stripped.
    """
    number, sep, label = value.partition("|")
    suffix = sep + label
    digits = SEPARATORS_RE.sub("", number)
    if not digits.isdecimal():
        return None, suffix
    return int(digits), suffix


def extract(content: str, supported: Iterable[Provider] = tuple(Provider),
            log: logging.Logger = LOG) -> List[Match]:
    """
    Pair ``{{l}}`` templates with ``{{v}}`` templates of the same provider.

    Each supported provider gets a FIFO queue of its view entries in document
    order; links are then walked in document order and each one takes the
    head of its provider's queue.  Links of unsupported providers are ignored
    and consume nothing.  A supported link with nothing left in its queue is
    warned about and dropped.
    """
    if not VIEWS_FIELD_RE.search(content) or not LINKS_FIELD_RE.search(content):
        return []

    supported = set(supported)
    queues: Dict[Provider, Deque[ViewEntry]] = {p: deque() for p in supported}

    for m in VIEW_RE.finditer(content):
        provider = Provider.parse(m.group(1))
        if provider not in supported:
            continue
        views, suffix = parse_views(m.group(2))
        if views is None:
            log.debug("Unparsable view count %r for %s", m.group(2), provider.value)
        queues[provider].append(
            ViewEntry(provider, m.group(2), views, m.start(), m.end(), suffix)
        )

    matches: List[Match] = []
    for m in LINK_RE.finditer(content):
        provider = Provider.parse(m.group(1))
        if provider not in supported:
            continue
        link = LinkEntry(provider, m.group(2).strip(), m.group(3))
        if not queues[provider]:
            log.warning("No view count found for %s (link %s%s)", provider.value, link.video_id,
                        f", {link.label}" if link.label else "")
            continue
        view = queues[provider].popleft()
        matches.append(Match(provider, link.video_id, view.views, view))
    return matches

###############################################################################
# Reconciliation                                                              #
###############################################################################

def render_view(provider: Provider, count: int, suffix: str = "") -> str:
    return f"{{{{v|{provider.value}|{commafy(count)}{suffix}}}}}"


def apply_substitutions(content: str, subs: Iterable[Substitution]) -> str:
    """Fold substitutions into ``content`` right to left so spans stay valid."""
    ordered = sorted(subs, key=lambda s: s.start, reverse=True)
    return reduce(lambda doc, s: doc[: s.start] + s.text + doc[s.end :], ordered, content)


def reconcile(content: str, matches: List[Match], ctx: RunContext) -> str:
    """
    Query each match's provider in order and rewrite changed view counts.

    Provider failures only skip their own match; QuotaExceeded propagates so
    the driver can stop the run.
    """
    subs: List[Substitution] = []
    for match in matches:
        adapter = ctx.registry[match.provider]
        try:
            count = adapter.fetch(match.video_id, match.recorded_views)
        except QuotaExceeded:
            raise
        except ProviderError as e:
            ctx.log.error("Could not fetch %s view count for %s: %s",
                          match.provider.value, match.video_id, e)
            continue

        ctx.log.debug("Old view count %s, new view count %d", match.view.raw, count)
        if not views_changed(match.recorded_views, count):
            continue
        subs.append(Substitution(
            match.view.start,
            match.view.end,
            render_view(match.provider, count, match.view.suffix),
        ))
    return apply_substitutions(content, subs)

###############################################################################
# Wiki collaborators                                                          #
###############################################################################

def load_settings() -> None:
    """Load settings from environment variables, falling back to defaults."""
    # Start with defaults
    CFG.update(DEFAULT_CFG.copy())

    for env_var in DEFAULT_CFG.keys():
        value = os.getenv(env_var)
        if value is not None:
            if env_var in ["REQUEST_TIMEOUT", "RUN_INTERVAL"]:
                try:
                    CFG[env_var] = int(value)
                except ValueError:
                    LOG.warning(f"Invalid {env_var} value: {value}, using default")
            else:
                CFG[env_var] = value


def connect(config: RunConfig) -> mwclient.Site:
    """
    Login to the wiki, persisting cookies in
    a Mozilla‐format jar at CFG['SESSION_FILE'].
    """
    jar_path = os.path.expanduser(str(CFG["SESSION_FILE"]))
    jar = http.cookiejar.MozillaCookieJar(jar_path)
    if os.path.exists(jar_path):
        try:
            jar.load(ignore_discard=True, ignore_expires=True)
            LOG.info("Loaded cookies from %s", jar_path)
        except (OSError, http.cookiejar.LoadError):
            LOG.warning("Could not load cookies, will start fresh")

    sess = requests.Session()
    sess.cookies = jar

    site = mwclient.Site(
        config.domain,
        path=config.api_path,
        clients_useragent=str(CFG["USER_AGENT"]),
        pool=sess,
    )

    if not site.logged_in and CFG.get("BOT_PASSWORD"):
        LOG.info("Logging in fresh")
        site.login(str(CFG["BOT_USER"]), str(CFG["BOT_PASSWORD"]))
        os.makedirs(os.path.dirname(jar_path), exist_ok=True)
        try:
            jar.save(ignore_discard=True, ignore_expires=True)
            LOG.debug("Saved cookies to %s", jar_path)
        except OSError as e:
            LOG.warning("Failed to save cookies: %s", e)

    return site


def list_song_pages(site: mwclient.Site, template: str) -> List[str]:
    """Titles of every mainspace, non-redirect page transcluding ``template``."""
    page = site.pages[template]
    return [p.name for p in page.embeddedin(namespace=0, filterredir="nonredirects")]


def read_list_file(path: str) -> List[str]:
    """Read newline-delimited page titles, skipping blank lines."""
    with open(os.path.expanduser(path), encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip()]


def save_recovery_list(path: str, titles: Iterable[str]) -> None:
    with open(os.path.expanduser(path), "w", encoding="utf-8") as fh:
        fh.write("\n".join(titles))
        fh.write("\n")


def fetch_page(site: mwclient.Site, title: str) -> Optional[PageTask]:
    """Fetch wikitext and an edit token for ``title``; None if it doesn't exist."""
    page = site.pages[title]
    if not page.exists:
        return None
    return PageTask(page.name, page.text(), site.get_token("csrf"))


def submit_edit(site: mwclient.Site, task: PageTask, text: str, summary: str, bot: bool) -> dict:
    """Post the new page text.  Raises mwclient.errors.APIError on API errors."""
    params = {
        "title": task.title,
        "text": text,
        "summary": summary,
        "token": task.edit_token,
        "minor": 1,
        "nocreate": 1,
    }
    if bot:
        params["bot"] = 1
    return site.post("edit", **params)

###############################################################################
# Page pipeline                                                               #
###############################################################################

def process_page(task: PageTask, ctx: RunContext) -> PageOutcome:
    """Extract, reconcile and (if anything changed) save one page."""
    matches = extract(task.text, ctx.registry.keys(), ctx.log)
    if not matches:
        ctx.log.debug("%s: no supported providers to update", task.title)
        return PageOutcome.NO_MATCHES

    new_text = reconcile(task.text, matches, ctx)
    if new_text == task.text:
        ctx.log.debug("%s: not enough view count difference", task.title)
        return PageOutcome.UNCHANGED

    if ctx.config.no_edit:
        ctx.log.debug("Content to post on %s:", task.title)
        ctx.log.debug(new_text)
        return PageOutcome.DRY_RUN

    try:
        submit_edit(ctx.site, task, new_text, ctx.config.edit_summary, not ctx.config.no_bot_flag)
    except mwclient.errors.APIError as e:
        ctx.log.error("MediaWiki API error while editing %s: %s", task.title, e)
        return PageOutcome.EDIT_FAILED
    ctx.log.info("Updated view counts on %s", task.title)
    return PageOutcome.EDITED


def process_title(title: str, ctx: RunContext) -> Optional[PageOutcome]:
    ctx.log.debug("Processing %s ...", title)
    task = fetch_page(ctx.site, title)
    if task is None:
        ctx.log.error("Page does not exist: %s", title)
        return None
    return process_page(task, ctx)


def run_queue(pending: Deque[str], ctx: RunContext) -> Dict[PageOutcome, int]:
    """
    Process pages strictly in order until the queue is empty.

    A page that fails for any reason is logged and skipped.  When a provider
    reports its quota exhausted the current page goes back to the head of
    the queue, the queue is saved to the list file and the process exits
    cleanly so a later ``--list`` run can resume.
    """
    stats: Dict[PageOutcome, int] = {}
    while pending:
        title = pending.popleft()
        try:
            outcome = process_title(title, ctx)
        except QuotaExceeded as e:
            pending.appendleft(title)
            try:
                save_recovery_list(ctx.config.list_file, pending)
            except OSError as oe:
                ctx.log.error(
                    "Provider quota exhausted (%s) but could not write %s: %s; remaining pages:\n%s",
                    e, ctx.config.list_file, oe, "\n".join(pending),
                )
            else:
                ctx.log.warning(
                    "Provider quota exhausted (%s); saved %d remaining pages to %s",
                    e, len(pending), ctx.config.list_file,
                )
            sys.exit(0)
        except (mwclient.errors.MwClientError, requests.RequestException) as e:
            ctx.log.error("An error occurred while fetching page contents of %s: %s", title, e)
            continue
        except Exception:
            ctx.log.exception("Unexpected error while processing %s", title)
            continue
        if outcome is not None:
            stats[outcome] = stats.get(outcome, 0) + 1
    return stats


def run_once(ctx: RunContext) -> None:
    """List the pages to process and run them all."""
    if ctx.config.use_list_file:
        titles = read_list_file(ctx.config.list_file)
    else:
        titles = list_song_pages(ctx.site, ctx.config.song_template)
    LOG.info("%d pages to process.", len(titles))
    stats = run_queue(deque(titles), ctx)
    LOG.info("Finished! %s", ", ".join(f"{o.value}: {n}" for o, n in stats.items()) or "nothing to do")


def build_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        domain=args.domain or str(CFG["SITE"]),
        use_list_file=args.list,
        no_edit=args.no_edit,
        no_bot_flag=args.no_bot,
        api_path=str(CFG["API_PATH"]),
        list_file=str(CFG["LIST_FILE"]),
        edit_summary=str(CFG["EDIT_SUMMARY"]),
        song_template=str(CFG["SONG_TEMPLATE"]),
    )


def main(args: argparse.Namespace) -> None:
    """
    Entry point: load settings, connect, and either run once or loop.
    """
    if args.debug:
        LOG.setLevel(logging.DEBUG)
    load_settings()
    if CFG["LOG_DIR"]:
        add_file_log(str(CFG["LOG_DIR"]))
    config = build_config(args)

    LOG.info("Authenticating with services...")
    timeout = int(CFG["REQUEST_TIMEOUT"]) or None
    registry = build_registry(
        load_credentials(CFG),
        timeout=timeout,
        user_agent=str(CFG["USER_AGENT"]),
        scraper_user_agent=str(CFG["SCRAPER_USER_AGENT"]),
    )
    ctx = RunContext(connect(config), config, registry)

    if args.once:
        run_once(ctx)
        return
    interval = int(CFG["RUN_INTERVAL"])
    while True:
        try:
            run_once(ctx)
        except Exception:
            LOG.exception("Error; sleeping before retry")
        time.sleep(interval)

###############################################################################
# CLI entry‑point                                                             #
###############################################################################

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="ViewCountBot 1.0")
    ap.add_argument("-1", "--once", action="store_true", help="run once and exit")
    ap.add_argument("--debug", action="store_true", help="verbose debug logging")
    ap.add_argument("--domain", help="wiki hostname (default: $SITE)")
    ap.add_argument("--list", action="store_true", help="read page titles from the list file")
    ap.add_argument("--no-edit", action="store_true", help="log new content instead of saving")
    ap.add_argument("--no-bot", action="store_true", help="don't mark edits as bot edits")
    return ap


def cli(argv: Optional[List[str]] = None) -> None:
    main(build_parser().parse_args(argv))


if __name__ == "__main__":
    cli()
