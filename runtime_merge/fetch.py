import http.client
import os
import urllib.request
from concurrent.futures import ThreadPoolExecutor

from runtime_merge.console import log
from runtime_merge.errors import FetchError

USER_AGENT = "runtime-merge/1.0"


def request_headers():
    headers = {
        "Accept": "application/octet-stream",
        "User-Agent": USER_AGENT,
    }
    token = os.getenv("NUGET_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def download(url):
    req = urllib.request.Request(url, headers=request_headers())
    try:
        with urllib.request.urlopen(req) as resp:
            data = resp.read()
    except (OSError, http.client.HTTPException) as exc:
        raise FetchError(f"Failed to download {url}: {exc}") from exc
    log(f"FETCH {url}: {len(data)} bytes")
    return data


def download_all(urls):
    urls = list(urls)
    if not urls:
        return []
    with ThreadPoolExecutor(max_workers=len(urls)) as pool:
        return list(pool.map(download, urls))
