"""
GitHub Actions Secret Store

Writes the session snapshot back into a repository secret so the next
scheduled run can restore it.

API: https://docs.github.com/en/rest/actions/secrets
Secrets must be sealed (libsodium ``crypto_box_seal``) with the repository
public key before upload.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from nacl.public import PublicKey, SealedBox

logger = logging.getLogger("SecretStore")


class SecretStoreError(Exception):
    """Secret could not be read or written."""


@dataclass(frozen=True)
class RepoPublicKey:
    key_id: str
    key: str  # base64


def seal_secret(public_key_b64: str, value: str) -> str:
    """Encrypt ``value`` for the repository key; returns base64 ciphertext."""
    public_key = PublicKey(base64.b64decode(public_key_b64))
    sealed = SealedBox(public_key).encrypt(value.encode("utf-8"))
    return base64.b64encode(sealed).decode("ascii")


class GitHubSecretStore:
    """
    Client for the repository Actions secrets endpoints.

    Authentication: ``Authorization: Bearer <REPO_TOKEN>``; the token needs
    write access to repository secrets.
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: str,
        repository: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token:
            raise ValueError("REPO_TOKEN is required")
        if not repository or "/" not in repository:
            raise ValueError(f"GITHUB_REPOSITORY must look like owner/repo, got {repository!r}")
        self.token = token
        self.repository = repository
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.BASE_URL}/repos/{self.repository}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, headers=self._get_headers())
        except httpx.RequestError as e:
            raise SecretStoreError(f"GitHub API request failed: {e}") from e

        logger.debug(f"{method} {endpoint} -> {response.status_code}")
        if response.status_code >= 400:
            raise SecretStoreError(f"GitHub API error {response.status_code}: {response.text[:200]}")
        return response

    async def get_public_key(self) -> RepoPublicKey:
        """
        API: GET /repos/{owner}/{repo}/actions/secrets/public-key
        """
        response = await self._request("GET", "/actions/secrets/public-key")
        data = response.json()
        if not data.get("key") or not data.get("key_id"):
            raise SecretStoreError("Public key response is missing key/key_id")
        return RepoPublicKey(key_id=str(data["key_id"]), key=data["key"])

    async def put_secret(self, name: str, value: str) -> None:
        """
        Create or update secret ``name``.

        API: PUT /repos/{owner}/{repo}/actions/secrets/{name}
        """
        public_key = await self.get_public_key()
        encrypted = seal_secret(public_key.key, value)
        await self._request(
            "PUT",
            f"/actions/secrets/{name}",
            json={"encrypted_value": encrypted, "key_id": public_key.key_id},
        )
        logger.info(f"🔐 Secret {name} updated in {self.repository} ({len(value)} chars)")
