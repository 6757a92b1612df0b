import argparse
import hashlib
import logging
import os
import re
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote, unquote, urljoin, urlparse, urlsplit
from urllib.request import url2pathname

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# ---------- Config ----------

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/png,image/*;q=0.8,*/*;q=0.5",
}

DEFAULT_IMAGE_DIR = "./images"
CMS_SUBDIR = "cms"
FILENAME_PREFIX = "cms-image"
DEFAULT_EXTENSION = "jpg"
ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "avif"}
MARKUP_EXTS = (".html", ".htm")

# characters encodeURI leaves alone besides alphanumerics and "_.-~"
URI_RESERVED = ";,/?:@&=+$!*'()#"

CHUNK_SIZE = 64 * 1024

SINGLE_VALUED = "single-valued"
LIST_VALUED = "list-valued"

# ---------- Settings ----------

@dataclass
class Settings:
    origins: List[str] = field(default_factory=list)
    image_dir: str = DEFAULT_IMAGE_DIR
    timeout: float = 30.0
    workers: int = 4
    max_redirects: int = 5
    retries: int = 0
    extensions: Tuple[str, ...] = MARKUP_EXTS


def normalize_origins(value: Union[None, str, Iterable[str]]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    origins: List[str] = []
    for origin in value:
        if origin and origin not in origins:
            origins.append(origin)
    return origins


# ---------- Data ----------

@dataclass(frozen=True)
class AssetReference:
    url: str
    start: int
    end: int
    kind: str


@dataclass
class RunReport:
    documents: int = 0
    documents_changed: int = 0
    substitutions: int = 0
    assets: int = 0
    downloaded: int = 0
    reused: int = 0

    def summary(self, image_dir: str = DEFAULT_IMAGE_DIR) -> str:
        return (
            f"Downloaded {self.assets} images to {image_dir} "
            f"({self.downloaded} fetched, {self.reused} reused, "
            f"{self.documents_changed}/{self.documents} documents updated)"
        )


class DeadlineExceeded(Exception):
    pass


# ---------- Utilities ----------

def build_session(retries: int = 0, headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=64, pool_maxsize=64)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def ensure_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logging.error("failed to create directory %s: %s", path, e)
        return False
    return True


def remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning("could not remove partial file %s: %s", path, e)


ESCAPE_RUN_RE = re.compile(r"(?:%[0-9A-Fa-f]{2})+")

# escapes decodeURI leaves encoded, plus "%" itself
KEEP_ESCAPED = set(";/?:@&=+$,#%")


def _unescape_run(match: "re.Match[str]") -> str:
    out: List[str] = []
    held: List[str] = []

    def flush() -> None:
        if not held:
            return
        raw = bytes(int(escape[1:], 16) for escape in held)
        try:
            out.append(raw.decode("utf-8"))
        except UnicodeDecodeError:
            out.append("".join(held))
        held.clear()

    run = match.group(0)
    for i in range(0, len(run), 3):
        escape = run[i:i + 3]
        if chr(int(escape[1:], 16)) in KEEP_ESCAPED:
            flush()
            out.append(escape)
        else:
            held.append(escape)
    flush()
    return "".join(out)


def request_url(url: str) -> str:
    return quote(ESCAPE_RUN_RE.sub(_unescape_run, url), safe=URI_RESERVED + "%")


def output_dir_from(value: Union[str, os.PathLike]) -> Path:
    if isinstance(value, str) and value.startswith("file://"):
        return Path(url2pathname(urlparse(value).path))
    return Path(value)


# ---------- Filenames ----------

def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return DEFAULT_EXTENSION
    name = unquote(path.rsplit("/", 1)[-1])
    ext = os.path.splitext(name)[1].lower().lstrip(".")
    return ext if ext in ALLOWED_EXTENSIONS else DEFAULT_EXTENSION


def asset_filename(url: str) -> str:
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()
    return f"{FILENAME_PREFIX}-{digest}.{url_extension(url)}"


def local_asset_path(url: str, image_root: Path) -> Path:
    return image_root / CMS_SUBDIR / asset_filename(url)


# ---------- Fetcher ----------

def _check_deadline(deadline: float, url: str) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DeadlineExceeded(url)
    return remaining


def fetch(
    session: requests.Session,
    url: str,
    destination: Path,
    timeout: float,
    *,
    max_redirects: int = 5,
) -> Optional[Path]:
    """Download ``url`` to ``destination``, following redirects manually.

    One deadline covers the whole redirect chain. The body is streamed into
    ``<destination>.part`` and moved into place only once complete, so every
    failure leaves ``destination`` untouched. Returns None on failure.
    """
    deadline = time.monotonic() + timeout
    partial = destination.with_name(destination.name + ".part")
    current = request_url(url)
    try:
        for _hop in range(max_redirects + 1):
            remaining = _check_deadline(deadline, url)
            resp = session.get(current, timeout=remaining, stream=True, allow_redirects=False)
            try:
                status = resp.status_code
                location = resp.headers.get("Location")
                if 300 <= status < 400 and location:
                    current = urljoin(current, location)
                    logging.debug("redirect %s -> %s", url, current)
                    continue
                if not 200 <= status < 300:
                    logging.warning("failed %s -> HTTP %s", url, status)
                    return None

                written = 0
                with open(partial, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        _check_deadline(deadline, url)
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
            finally:
                resp.close()

            if written == 0:
                logging.warning("empty response %s", url)
                return None
            os.replace(partial, destination)
            logging.info("downloaded asset: %s -> %s", url, destination)
            return destination

        logging.warning("too many redirects for %s (limit %d)", url, max_redirects)
        return None

    except DeadlineExceeded:
        logging.warning("download timeout for %s after %.1fs", url, timeout)
        return None
    except requests.RequestException as e:
        logging.warning("error downloading %s: %s", url, e)
        return None
    except ValueError as e:
        logging.warning("malformed url while downloading %s: %s", url, e)
        return None
    except OSError as e:
        logging.warning("file write error for %s: %s", url, e)
        return None
    finally:
        remove_quietly(partial)


# ---------- Asset cache ----------

Fetcher = Callable[[str, Path], Optional[Path]]


class AssetCache:
    def __init__(self, image_root: Path, fetcher: Fetcher):
        self.image_root = image_root
        self.fetcher = fetcher
        self.downloaded = 0
        self.reused = 0
        self._entries: Dict[str, Path] = {}
        self._inflight: Dict[str, "Future[Optional[Path]]"] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._entries

    def resolve(self, url: str) -> Optional[Path]:
        with self._lock:
            path = self._entries.get(url)
            if path is not None:
                return path
            pending = self._inflight.get(url)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[url] = pending
        if not owner:
            return pending.result()

        path = None
        try:
            path = self._load(url)
        finally:
            with self._lock:
                if path is not None:
                    self._entries[url] = path
                del self._inflight[url]
            pending.set_result(path)
        return path

    def _load(self, url: str) -> Optional[Path]:
        destination = local_asset_path(url, self.image_root)
        if destination.is_file():
            logging.debug("reusing %s for %s", destination, url)
            with self._lock:
                self.reused += 1
            return destination
        if not ensure_dir(destination.parent):
            return None
        path = self.fetcher(url, destination)
        if path is not None:
            with self._lock:
                self.downloaded += 1
        return path


# ---------- Extraction ----------

def _quoted_value(body: str) -> str:
    return rf"""(?:"(?P<dq>{body}[^"]+)"|'(?P<sq>{body}[^']+)')"""


IMG_TAG_RE = re.compile(r"<(?:img|source)\b[^>]*>", re.IGNORECASE)

SRCSET_ATTR_RE = re.compile(
    r"""(?<![\w-])(?:data-)?srcset\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')""",
    re.IGNORECASE,
)


def _src_pattern(origin: str) -> "re.Pattern[str]":
    return re.compile(r"(?<![\w-])(?i:(?:data-)?src)\s*=\s*" + _quoted_value(re.escape(origin)))


def _candidate_pattern(origin: str) -> "re.Pattern[str]":
    return re.compile(r"(?<![^\s,])" + re.escape(origin) + r"[^\s\"',]+")


def scan_references(text: str, origins: Sequence[str]) -> List[AssetReference]:
    tags = [(tag.group(0), tag.start()) for tag in IMG_TAG_RE.finditer(text)]
    srcsets = []
    for attr in SRCSET_ATTR_RE.finditer(text):
        group = "dq" if attr.group("dq") is not None else "sq"
        srcsets.append((attr.group(group), attr.start(group)))

    found: List[Tuple[int, AssetReference]] = []
    for rank, origin in enumerate(origins):
        src_re = _src_pattern(origin)
        for tag, offset in tags:
            for m in src_re.finditer(tag):
                group = "dq" if m.group("dq") is not None else "sq"
                ref = AssetReference(m.group(group), offset + m.start(group), offset + m.end(group), SINGLE_VALUED)
                found.append((rank, ref))

        candidate_re = _candidate_pattern(origin)
        for value, offset in srcsets:
            for m in candidate_re.finditer(value):
                ref = AssetReference(m.group(0), offset + m.start(), offset + m.end(), LIST_VALUED)
                found.append((rank, ref))

    # earlier origins win when two origins match the same span
    found.sort(key=lambda item: (item[1].start, item[0]))
    refs: List[AssetReference] = []
    for _rank, ref in found:
        if refs and ref.start < refs[-1].end:
            continue
        refs.append(ref)
    return refs


# ---------- Rewriters ----------

def relative_asset_path(asset: Path, document: Path) -> str:
    rel = Path(os.path.relpath(asset, document.parent)).as_posix()
    if not rel.startswith("../"):
        rel = "./" + rel
    return rel


def rewrite_text(text: str, document: Path, origins: Sequence[str], cache: AssetCache) -> Tuple[str, int]:
    parts: List[str] = []
    pos = 0
    count = 0
    for ref in scan_references(text, origins):
        local = cache.resolve(ref.url)
        if local is None:
            continue
        parts.append(text[pos:ref.start])
        parts.append(relative_asset_path(local, document))
        pos = ref.end
        count += 1
    if not count:
        return text, 0
    parts.append(text[pos:])
    return "".join(parts), count


def rewrite_document(document: Path, origins: Sequence[str], cache: AssetCache) -> int:
    try:
        text = document.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logging.error("failed to read %s: %s", document, e)
        return 0

    new_text, count = rewrite_text(text, document, origins, cache)
    if not count:
        return 0
    try:
        document.write_bytes(new_text.encode("utf-8"))
    except OSError as e:
        logging.error("failed to write %s: %s", document, e)
        return 0
    logging.debug("rewrote %d reference(s) in %s", count, document)
    return count


# ---------- Tree walking ----------

def find_documents(root: Path, extensions: Iterable[str] = MARKUP_EXTS) -> List[Path]:
    exts = {e.lower() for e in extensions}
    documents: List[Path] = []
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logging.error("failed to list %s: %s", current, e)
            continue
        subdirs = []
        for entry in entries:
            if entry.is_dir() and not entry.is_symlink():
                subdirs.append(entry)
            elif entry.is_file() and entry.suffix.lower() in exts:
                documents.append(entry)
        stack.extend(reversed(subdirs))
    return documents


# ---------- Main flows ----------

def localize_remote_assets(
    output_root: Path,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> RunReport:
    report = RunReport()
    origins = normalize_origins(settings.origins)
    if not origins:
        logging.info("no remote origins configured, skipping image localization")
        return report

    output_root = Path(output_root)
    image_root = output_root / settings.image_dir
    logging.info(
        "Downloading images from %d source%s...",
        len(origins),
        "s" if len(origins) > 1 else "",
    )
    ensure_dir(image_root)

    if session is None:
        session = build_session(settings.retries)

    def fetcher(url: str, destination: Path) -> Optional[Path]:
        return fetch(session, url, destination, settings.timeout, max_redirects=settings.max_redirects)

    cache = AssetCache(image_root, fetcher)
    documents = find_documents(output_root, settings.extensions)
    report.documents = len(documents)

    def process(document: Path) -> int:
        try:
            return rewrite_document(document, origins, cache)
        except Exception:  # pylint: disable=broad-except
            logging.exception("unexpected error processing %s", document)
            return 0

    with ThreadPoolExecutor(max_workers=max(1, settings.workers)) as pool:
        for count in pool.map(process, documents):
            if count:
                report.documents_changed += 1
                report.substitutions += count

    report.assets = len(cache)
    report.downloaded = cache.downloaded
    report.reused = cache.reused
    logging.info("%s", report.summary(settings.image_dir))
    return report


def build_done_hook(
    origins: Union[None, str, Iterable[str]],
    image_dir: str = DEFAULT_IMAGE_DIR,
    **overrides,
) -> Callable[[Union[str, os.PathLike]], RunReport]:
    settings = Settings(origins=normalize_origins(origins), image_dir=image_dir, **overrides)

    def hook(output_dir: Union[str, os.PathLike]) -> RunReport:
        return localize_remote_assets(output_dir_from(output_dir), settings)

    return hook


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="cms-image-localizer",
        description="Download CMS-hosted images referenced by a built site and point the HTML at local copies.",
    )
    p.add_argument("output_root", help="built site directory to rewrite in place")
    p.add_argument("--origin", action="append", default=[], required=True, help="remote asset base URL to localize (repeatable)")
    p.add_argument("--image-dir", default=DEFAULT_IMAGE_DIR, help="image directory relative to the output root")
    p.add_argument("--timeout", type=float, default=30.0, help="per-download timeout seconds, redirects included")
    p.add_argument("--workers", type=int, default=4, help="documents processed concurrently")
    p.add_argument("--retries", type=int, default=0, help="transport retries on connection errors and 429/5xx")
    p.add_argument("--max-redirects", type=int, default=5, help="redirect hops followed per download")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    output_root = Path(args.output_root).resolve()
    if not output_root.is_dir():
        print(f"Output root is not a directory: {output_root}")
        sys.exit(1)
    for origin in args.origin:
        if urlparse(origin).scheme not in {"http", "https"}:
            print(f"Invalid origin {origin!r}. Use http:// or https://")
            sys.exit(1)

    settings = Settings(
        origins=normalize_origins(args.origin),
        image_dir=args.image_dir,
        timeout=max(0.1, args.timeout),
        workers=max(1, args.workers),
        max_redirects=max(0, args.max_redirects),
        retries=max(0, args.retries),
    )

    report = localize_remote_assets(output_root, settings)
    print(report.summary(settings.image_dir))


if __name__ == "__main__":
    main()
