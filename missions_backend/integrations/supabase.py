"""Utilities to check Supabase Storage credentials."""

from __future__ import annotations

import json
from typing import Any, Dict

import requests

USER_AGENT = 'MissionsBackend/1.0'


def _extract(config: Dict[str, Any], key: str) -> str:
    value = config.get(key)
    if isinstance(value, dict):
        return str(value.get('value', '')).strip()
    if value is None:
        return ''
    return str(value).strip()


def build_client(config: Dict[str, Any]) -> requests.Session:
    """Build an authenticated session for the storage API."""

    service_key = _extract(config, 'service_key')
    if not service_key:
        raise ValueError('The Supabase service role key is missing.')
    session = requests.Session()
    session.headers.update(
        {
            'Authorization': f'Bearer {service_key}',
            'apikey': service_key,
            'User-Agent': USER_AGENT,
        }
    )
    return session


def _timeout(config: Dict[str, Any]) -> float:
    raw = _extract(config, 'timeout')
    try:
        return float(raw) if raw else 10.0
    except ValueError:
        return 10.0


def test_credentials(config: Dict[str, Any]) -> Dict[str, Any]:
    """Check that the credentials can list buckets and see the missions bucket."""

    url = _extract(config, 'url').rstrip('/')
    if not url:
        return {'ok': False, 'message': 'The Supabase project URL is missing.'}
    try:
        session = build_client(config)
    except ValueError as exc:
        return {'ok': False, 'message': str(exc)}

    try:
        response = session.get(f'{url}/storage/v1/bucket', timeout=_timeout(config))
    except requests.RequestException as exc:  # pragma: no cover - real network errors
        return {'ok': False, 'message': f'Could not connect to Supabase: {exc}'}
    finally:
        session.close()

    if response.status_code in (401, 403):
        return {'ok': False, 'message': 'Supabase rejected the service role key.'}
    if response.status_code >= 400:
        try:
            payload = response.json()
            message = payload.get('message') or payload.get('error')
        except (ValueError, json.JSONDecodeError, AttributeError):
            message = ''
        message = message or f'Supabase answered with an error {response.status_code}.'
        return {'ok': False, 'message': message}

    bucket = _extract(config, 'bucket')
    if not bucket:
        return {'ok': True, 'message': 'Valid Supabase credentials.'}
    try:
        payload = response.json()
    except (ValueError, json.JSONDecodeError):
        payload = []
    names = {item.get('name') for item in payload if isinstance(item, dict)} if isinstance(payload, list) else set()
    if bucket not in names:
        return {
            'ok': False,
            'message': f"The credentials are valid but the bucket '{bucket}' does not exist.",
        }
    return {'ok': True, 'message': f"Valid Supabase credentials for bucket '{bucket}'."}
