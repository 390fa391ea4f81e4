import asyncio
import json
import logging
import ssl
from pathlib import Path
from typing import Tuple
from urllib.parse import urlencode

import httpx
import square.k8s
from square.dtypes import ConnectionParameters, K8sConfig

# Define the exceptions that indicate a failed web request.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, asyncio.TimeoutError)

# Status codes that callers are expected to handle themselves, eg to implement
# create-or-update semantics. They are not worth an error log.
HANDLED_CODES = (404, 409)

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("pgclone")


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    # Parse Kubeconfig file.
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    # Create HTTPX client.
    params = ConnectionParameters(read=600, write=600, pool=600)
    cfg, err = square.k8s.create_httpx_client(cfg, params)
    if err:
        return K8sConfig(), True

    # Set the base URL to the K8s API server for convenience.
    cfg.client.base_url = cfg.url

    return cfg, False


def with_selector(url: str, selector: str) -> str:
    """Return `url` with the label `selector` as query parameter."""
    if selector == "":
        return url
    return f"{url}?{urlencode({'labelSelector': selector})}"


async def request(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None = None,
    headers: dict | None = None,
) -> Tuple[dict, int, bool]:
    """Send one `method` request to the K8s API and decode the JSON response.

    Inputs:
        k8sconfig: K8sConfig
            Cluster credentials. Its `client` is the shared HttpX client.
        method: str
            HTTP method, eg "GET" or "DELETE".
        url: str
            Path relative to the API server, eg `/api/v1/namespaces`.
        payload: dict | list | None
            JSON body, usually a K8s manifest or `DeleteOptions`.
        headers: dict | None
            Extra request headers on top of those of the client.

    Returns:
        (dict, int, bool): the JSON response, the HTTP status code and the
        error flag. The status code is -1 if the request never reached the
        API server.

    There are no retries. A failed request is final.

    """
    try:
        ret = await k8sconfig.client.request(method, url, json=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        logit.error(f"{method} {url} failed", {"cluster": k8sconfig.name, "reason": str(err)})
        return ({}, -1, True)

    # K8s answers with JSON, even for errors.
    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        logit.error(
            f"{method} {url} returned invalid JSON",
            {
                "cluster": k8sconfig.name,
                "status": ret.status_code,
                "reason": f"{err.msg} in line {err.lineno} column {err.colno}",
                "body": err.doc,
            },
        )
        return ({}, ret.status_code, True)

    logit.debug(
        f"{method} {ret.status_code} {ret.url}",
        {"headers": headers, "payload": payload, "response": response},
    )
    return (response, ret.status_code, False)


async def _call(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | None,
    ok_codes: Tuple[int, ...],
) -> Tuple[dict, int, bool]:
    resp, code, err = await request(k8sconfig, method, url, payload, headers=None)
    if err or code not in ok_codes:
        if code not in HANDLED_CODES:
            logit.error(f"{code} - {method} - {url} - {resp}")
        return (resp, code, True)
    return (resp, code, False)


async def delete(
    k8sconfig: K8sConfig, url: str, payload: dict | None = None
) -> Tuple[dict, int, bool]:
    """Make DELETE requests to K8s (see `request`)."""
    return await _call(k8sconfig, "DELETE", url, payload, (200, 202))


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, int, bool]:
    """Make GET requests to K8s (see `request`)."""
    return await _call(k8sconfig, "GET", url, None, (200,))


async def post(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, int, bool]:
    """Make POST requests to K8s (see `request`)."""
    return await _call(k8sconfig, "POST", url, payload, (200, 201, 202))


async def put(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, int, bool]:
    """Make PUT requests to K8s (see `request`)."""
    return await _call(k8sconfig, "PUT", url, payload, (200, 201))
