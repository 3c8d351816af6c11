"""
Provider adapters
========================================

One adapter per video/audio host.  Each maps an opaque identifier taken
from a ``{{l|PP|ID}}`` template to the host's current raw view count, and
reports failures as :class:`ProviderError` with a machine-readable cause.

The adapters are registered in a static ``Provider -> adapter`` mapping by
:func:`build_registry`; providers whose credentials are missing are simply
left out of the mapping.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Standard library imports
# ---------------------------------------------------------------------------
import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Optional

# ---------------------------------------------------------------------------
# Third‑party dependencies
# ---------------------------------------------------------------------------
import requests
from bs4 import BeautifulSoup
from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

LOG = logging.getLogger("viewcountbot.providers")

###############################################################################
# Provider codes & errors                                                     #
###############################################################################

class Provider(str, Enum):
    """Two-letter provider codes as written in ``{{v}}``/``{{l}}`` templates."""
    BILIBILI = "bb"
    NICONICO = "nn"
    PIAPRO = "pp"
    SOUNDCLOUD = "sc"
    VIMEO = "vm"
    YOUTUBE = "yt"

    @classmethod
    def parse(cls, code: str) -> Optional["Provider"]:
        """Return the provider for ``code``, or None for codes we don't know."""
        try:
            return cls(code)
        except ValueError:
            return None


class ErrorCause(Enum):
    NOT_FOUND = "not found"
    NO_DATA = "no data extracted"
    PARSE = "parse failure"
    TRANSPORT = "transport failure"
    UNAVAILABLE = "unavailable"
    INVALID_RESPONSE = "invalid response"


class ProviderError(Exception):
    """A provider could not produce a view count for one video."""

    def __init__(self, cause: ErrorCause, message: str, status: int | None = None):
        super().__init__(message)
        self.cause = cause
        self.status = status

    def __str__(self) -> str:
        base = f"[{self.cause.value}] {super().__str__()}"
        return f"{base} (HTTP {self.status})" if self.status else base


class QuotaExceeded(ProviderError):
    """Daily quota or rate limit hit; the whole run has to pause."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(ErrorCause.TRANSPORT, message, status)

###############################################################################
# Credentials                                                                 #
###############################################################################

@dataclass(frozen=True)
class Credentials:
    """Opaque per-provider credentials handed to the adapters."""
    youtube_api_key: str = ""
    youtube_token_file: str = ""
    vimeo_token: str = ""

    @property
    def has_youtube(self) -> bool:
        return bool(self.youtube_api_key or self.youtube_token_file)


def load_credentials(cfg: Dict[str, object]) -> Credentials:
    return Credentials(
        youtube_api_key=str(cfg.get("YOUTUBE_API_KEY") or ""),
        youtube_token_file=str(cfg.get("YOUTUBE_TOKEN_FILE") or ""),
        vimeo_token=str(cfg.get("VIMEO_TOKEN") or ""),
    )

###############################################################################
# Adapters                                                                    #
###############################################################################

DEFAULT_USER_AGENT = "ViewCountBot/1.0 (view count updater)"
DEFAULT_SCRAPER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class ProviderAdapter:
    """Base class: fetch(video_id, recorded) -> raw view count."""
    provider: ClassVar[Provider]
    scraper: ClassVar[bool] = False

    def __init__(
        self,
        session: requests.Session,
        timeout: float | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        scraper_user_agent: str = DEFAULT_SCRAPER_USER_AGENT,
    ):
        self.session = session
        self.timeout = timeout
        self.user_agent = scraper_user_agent if self.scraper else user_agent

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        raise NotImplementedError

    def _get(self, url: str, **kwargs) -> requests.Response:
        """
        GET ``url`` and return the response if it is 2xx/3xx.

        Anything else becomes a TRANSPORT error (429 becomes QuotaExceeded),
        as does any requests-level failure.
        """
        headers = {"User-Agent": self.user_agent}
        headers.update(kwargs.pop("headers", {}))
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(ErrorCause.TRANSPORT, f"[{self.provider.value}] {e}") from e
        if resp.status_code == 429:
            raise QuotaExceeded(f"[{self.provider.value}] rate limited", resp.status_code)
        if not 200 <= resp.status_code < 400:
            raise ProviderError(
                ErrorCause.TRANSPORT,
                f"[{self.provider.value}] request to {url} failed",
                resp.status_code,
            )
        return resp

    def _json(self, resp: requests.Response) -> object:
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(ErrorCause.PARSE, f"[{self.provider.value}] invalid JSON: {e}") from e

    def _count(self, value: object, video_id: str) -> int:
        """Convert a count field to int; anything else is a PARSE error."""
        try:
            return int(str(value).replace(",", ""))
        except (TypeError, ValueError) as e:
            raise ProviderError(
                ErrorCause.PARSE, f"[{self.provider.value}] bad view count {value!r} for {video_id}"
            ) from e


def _dig(obj: object, *keys: str) -> object:
    """obj[k1][k2]... or None as soon as a level is not a dict."""
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


class BilibiliAdapter(ProviderAdapter):
    provider = Provider.BILIBILI
    STAT_URL = "https://api.bilibili.com/x/web-interface/archive/stat"

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        data = self._json(self._get(self.STAT_URL, params={"aid": video_id}))
        view = _dig(data, "data", "view")
        if not view:
            raise ProviderError(ErrorCause.NO_DATA, f"No bilibili view count: {json.dumps(data)[:200]}")
        return self._count(view, video_id)


class SoundCloudAdapter(ProviderAdapter):
    """Scrapes the hydration array SoundCloud embeds in its page JavaScript."""
    provider = Provider.SOUNDCLOUD
    scraper = True
    PAGE_URL = "https://soundcloud.com/{id}"

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        url = self.PAGE_URL.format(id=video_id)
        try:
            resp = self._get(url)
        except QuotaExceeded:
            raise
        except ProviderError as e:
            if e.status == 404:
                raise ProviderError(ErrorCause.NOT_FOUND, f"[soundcloud] Not found: {url}", 404) from e
            raise

        soup = BeautifulSoup(resp.text, "html.parser")
        inline = [s for s in soup.find_all("script") if not s.get("src")]
        if not inline:
            raise ProviderError(ErrorCause.NO_DATA, "Failed to extract data from SoundCloud's JavaScript")
        source = inline[-1].string or inline[-1].get_text()
        start, end = source.find("[{"), source.rfind("}]")
        if start < 0 or end < start:
            raise ProviderError(ErrorCause.NO_DATA, "Failed to extract data from SoundCloud's JavaScript")
        try:
            hydration = json.loads(source[start : end + 2])
        except ValueError as e:
            raise ProviderError(ErrorCause.PARSE, f"SoundCloud JSON parsing error: {e}") from e

        for entity in hydration:
            if isinstance(entity, dict) and entity.get("hydratable") == "sound":
                sound = entity.get("data")
                if isinstance(sound, list):
                    sound = sound[0] if sound else None
                count = _dig(sound, "playback_count")
                if count is None:
                    break
                return self._count(count, video_id)
        raise ProviderError(ErrorCause.NO_DATA, f"[soundcloud] No playback count for {video_id}")


class NiconicoAdapter(ProviderAdapter):
    provider = Provider.NICONICO
    THUMBINFO_URL = "https://ext.nicovideo.jp/api/getthumbinfo/{id}"

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        resp = self._get(self.THUMBINFO_URL.format(id=video_id))
        try:
            root = ET.fromstring(resp.content)
        except ET.ParseError as e:
            raise ProviderError(ErrorCause.PARSE, f"[nn] invalid XML for {video_id}: {e}") from e
        # <nicovideo_thumb_response><thumb>...<view_counter>
        # Deleted videos answer with <error> in place of <thumb>.
        first = root[0] if len(root) else None
        counter = first.find("view_counter") if first is not None else None
        if counter is None or not (counter.text or "").strip():
            raise ProviderError(ErrorCause.UNAVAILABLE, f"[nn] unavailable video {video_id}")
        try:
            return int(counter.text.strip())
        except ValueError as e:
            raise ProviderError(ErrorCause.PARSE, f"[nn] bad view_counter {counter.text!r}") from e


class PiaproAdapter(ProviderAdapter):
    """Reads the LD-JSON block of a Piapro content page."""
    provider = Provider.PIAPRO
    scraper = True
    PAGE_URL = "https://piapro.jp/t/{id}"
    AUDIO_PREFIX = "audio:"

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        if video_id.startswith(self.AUDIO_PREFIX):
            # Audio-only items expose no counter; keep whatever the page says.
            if recorded is None:
                raise ProviderError(ErrorCause.NO_DATA, f"[piapro] audio item {video_id} has no count")
            LOG.debug("Piapro audio item %s is not supported; keeping %d", video_id, recorded)
            return recorded

        resp = self._get(self.PAGE_URL.format(id=video_id))
        soup = BeautifulSoup(resp.text, "html.parser")
        tag = soup.find("script", attrs={"type": "application/ld+json"})
        if tag is None:
            raise ProviderError(ErrorCause.NO_DATA, "[piapro] Unable to find view count")
        try:
            data = json.loads(tag.string or tag.get_text())
        except ValueError as e:
            raise ProviderError(ErrorCause.PARSE, f"[piapro] LD-JSON parsing error: {e}") from e

        stats = data.get("interactionStatistic") if isinstance(data, dict) else None
        if isinstance(stats, list):
            stats = stats[0] if stats else None
        count = stats.get("userInteractionCount") if isinstance(stats, dict) else None
        if count is None:
            raise ProviderError(ErrorCause.NO_DATA, "[piapro] Unable to find view count")
        try:
            return int(str(count).replace(",", ""))
        except ValueError as e:
            raise ProviderError(ErrorCause.PARSE, f"[piapro] bad view count {count!r}") from e


class VimeoAdapter(ProviderAdapter):
    provider = Provider.VIMEO
    VIDEO_URL = "https://api.vimeo.com/videos/{id}"

    def __init__(self, session: requests.Session, token: str, **kwargs):
        super().__init__(session, **kwargs)
        self.token = token

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        resp = self._get(
            self.VIDEO_URL.format(id=video_id),
            headers={
                "Accept": "application/vnd.vimeo.video+json;version=3.4",
                "Authorization": f"Bearer {self.token}",
            },
        )
        data = self._json(resp)
        plays = _dig(data, "stats", "plays")
        if plays is None:
            raise ProviderError(ErrorCause.NO_DATA, f"[vimeo] No play count for {video_id}")
        return self._count(plays, video_id)


class YouTubeAdapter(ProviderAdapter):
    """YouTube Data API v3 ``videos.list``; quota-limited."""
    provider = Provider.YOUTUBE
    QUOTA_REASONS = ("quotaexceeded", "dailylimitexceeded", "ratelimitexceeded")

    def __init__(self, session: requests.Session, credentials: Credentials, client=None, **kwargs):
        super().__init__(session, **kwargs)
        self.credentials = credentials
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if self.credentials.youtube_token_file:
                creds = GoogleCredentials.from_authorized_user_file(self.credentials.youtube_token_file)
                self._client = build("youtube", "v3", credentials=creds, cache_discovery=False)
            else:
                self._client = build(
                    "youtube", "v3", developerKey=self.credentials.youtube_api_key, cache_discovery=False
                )
        return self._client

    def fetch(self, video_id: str, recorded: int | None = None) -> int:
        try:
            response = self.client.videos().list(part="statistics", id=video_id).execute()
        except HttpError as e:
            status = e.resp.status if e.resp is not None else None
            content = e.content.decode("utf-8", "replace") if isinstance(e.content, bytes) else str(e.content)
            if status == 429 or (status == 403 and any(r in content.lower() for r in self.QUOTA_REASONS)):
                raise QuotaExceeded(f"[youtube] quota exceeded: {e}", status) from e
            raise ProviderError(ErrorCause.TRANSPORT, f"[youtube] {e}", status) from e

        items = response.get("items") if isinstance(response, dict) else None
        if not isinstance(items, list):
            raise ProviderError(ErrorCause.INVALID_RESPONSE, "[youtube] Response data not valid")
        if not items:
            raise ProviderError(ErrorCause.NOT_FOUND, f"[youtube] Video with ID {video_id} not found")
        try:
            return int(items[0]["statistics"]["viewCount"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(ErrorCause.NO_DATA, f"[youtube] No view count for {video_id}") from e

###############################################################################
# Registry                                                                    #
###############################################################################

def build_registry(
    credentials: Credentials,
    session: requests.Session | None = None,
    timeout: float | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
    scraper_user_agent: str = DEFAULT_SCRAPER_USER_AGENT,
) -> Dict[Provider, ProviderAdapter]:
    """Register every adapter whose credentials are available."""
    session = session or requests.Session()
    opts = {"timeout": timeout, "user_agent": user_agent, "scraper_user_agent": scraper_user_agent}
    registry: Dict[Provider, ProviderAdapter] = {
        Provider.BILIBILI: BilibiliAdapter(session, **opts),
        Provider.NICONICO: NiconicoAdapter(session, **opts),
        Provider.PIAPRO: PiaproAdapter(session, **opts),
        Provider.SOUNDCLOUD: SoundCloudAdapter(session, **opts),
    }
    if credentials.vimeo_token:
        registry[Provider.VIMEO] = VimeoAdapter(session, credentials.vimeo_token, **opts)
    else:
        LOG.warning("No Vimeo token configured; vm links will be ignored.")
    if credentials.has_youtube:
        registry[Provider.YOUTUBE] = YouTubeAdapter(session, credentials, **opts)
    else:
        LOG.warning("No YouTube credentials configured; yt links will be ignored.")
    return registry
