"""Review events from GitHub pull requests.

Maps a pull request onto the proposal lifecycle:
- every pushed commit is a new revision, planned by CI: plan_generated
- an APPROVED review: approved (by the reviewer)
- merged: merged
- closed without merging: rejected

Events are replayed in timestamp order. Events that are not legal in the
proposal's state at that point (e.g. an admin merge without approval) are
logged and dropped, so such a proposal never reaches Merged.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import EngineSettings
from orchestrator.errors import InvalidTransition
from orchestrator.gate import APPROVED, MERGED, PLAN_GENERATED, REJECTED, Proposal, ProposalRegistry, ReviewEvent

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'https://api.github.com'

# Same-timestamp ordering
_EVENT_RANK = {PLAN_GENERATED: 0, APPROVED: 1, REJECTED: 2, MERGED: 3}


class ReviewSourceError(Exception):
    """The review collaborator could not be reached or answered unexpectedly."""


def parse_timestamp(value: str) -> float:
    """GitHub ISO 8601 timestamp ('2024-05-01T12:00:00Z') to epoch seconds."""
    return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()


@dataclass
class GitHubReviewSource:
    """Reads pull request state from the GitHub REST API.

    Attributes:
        repo: owner/name
        token: API token (falls back to $GITHUB_TOKEN)
        api_url: API root, for GitHub Enterprise
        timeout: Per-request timeout in seconds
        verify: Verify TLS certificates
    """
    repo: str
    token: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    timeout: int = 30
    verify: bool = True
    session: Optional[requests.Session] = None

    def __post_init__(self) -> None:
        if not self.repo or '/' not in self.repo:
            raise ValueError(f"Review repository must be 'owner/name', got '{self.repo}'")
        if self.token is None:
            self.token = os.environ.get('GITHUB_TOKEN')
        if self.session is None:
            self.session = requests.Session()
            retry = Retry(total=3, backoff_factor=1, status_forcelist=(502, 503, 504), allowed_methods=('GET',))
            self.session.mount('https://', HTTPAdapter(max_retries=retry))
            self.session.mount('http://', HTTPAdapter(max_retries=retry))
        if not self.verify:
            # Self-signed GitHub Enterprise certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> 'GitHubReviewSource':
        return cls(repo=settings.review_repo)

    def _headers(self) -> dict:
        headers = {
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': '2022-11-28',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _get(self, path: str) -> Any:
        """GET one resource, or every page of a list resource."""
        url: Optional[str] = f"{self.api_url.rstrip('/')}/repos/{self.repo}{path}"
        params: Optional[dict] = {'per_page': 100}
        pages: list = []
        while url:
            try:
                resp = self.session.get(url, headers=self._headers(), params=params,
                                        timeout=self.timeout, verify=self.verify)
            except requests.exceptions.ConnectionError as e:
                raise ReviewSourceError(f"Cannot connect to {self.api_url}: {e}")
            except requests.exceptions.Timeout:
                raise ReviewSourceError(f"Timeout connecting to {self.api_url}")

            if resp.status_code == 404:
                raise ReviewSourceError(f"Not found: {self.repo}{path}")
            if resp.status_code in (401, 403):
                raise ReviewSourceError(
                    f"GitHub API denied access ({resp.status_code}); check GITHUB_TOKEN permissions"
                )
            if resp.status_code != 200:
                raise ReviewSourceError(f"Unexpected API response: {resp.status_code} - {resp.text[:100]}")

            data = resp.json()
            if not isinstance(data, list):
                return data
            pages.extend(data)
            url = resp.links.get('next', {}).get('url')
            params = None  # next link already carries the query
        return pages

    def fetch_events(self, number: int | str) -> list[ReviewEvent]:
        """Review events for a pull request, oldest first."""
        pid = str(number)
        pull = self._get(f'/pulls/{pid}')
        events: list[ReviewEvent] = []

        for commit in self._get(f'/pulls/{pid}/commits'):
            committed = ((commit.get('commit') or {}).get('committer') or {}).get('date')
            if committed:
                author = (commit.get('author') or {}).get('login', '')
                events.append(ReviewEvent(pid, PLAN_GENERATED, author, parse_timestamp(committed)))

        for review in self._get(f'/pulls/{pid}/reviews'):
            if review.get('state') == 'APPROVED' and review.get('submitted_at'):
                reviewer = (review.get('user') or {}).get('login', '')
                events.append(ReviewEvent(pid, APPROVED, reviewer, parse_timestamp(review['submitted_at'])))

        if pull.get('merged_at'):
            merger = (pull.get('merged_by') or {}).get('login', '')
            events.append(ReviewEvent(pid, MERGED, merger, parse_timestamp(pull['merged_at'])))
        elif pull.get('state') == 'closed' and pull.get('closed_at'):
            events.append(ReviewEvent(pid, REJECTED, '', parse_timestamp(pull['closed_at'])))

        events.sort(key=lambda e: (e.at, _EVENT_RANK[e.kind]))
        logger.debug(f"[review] {self.repo}#{pid}: {len(events)} event(s)")
        return events

    def load(self, number: int | str) -> Proposal:
        """Replay a pull request's events into a Proposal."""
        proposal = Proposal(id=str(number))
        for event in self.fetch_events(number):
            try:
                proposal.handle(event)
            except InvalidTransition as e:
                logger.warning(f"[review] Ignoring event: {e}")
        return proposal

    def sync(self, registry: ProposalRegistry, number: int | str) -> Proposal:
        """Refresh a proposal's review state, keeping its local deployment history."""
        proposal = self.load(number)
        existing = registry.get(proposal.id)
        if existing is not None:
            proposal.deployments = dict(existing.deployments)
        registry.put(proposal)
        logger.info(f"[review] Proposal {proposal.id} is {proposal.state.value}")
        return proposal
