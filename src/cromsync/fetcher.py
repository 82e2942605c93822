import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from . import config
from .errors import MalformedResponseError, QuotaExhausted, TransientFetchError
from .ratelimit import QuotaBudget

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR_MARKERS = ("rate limit", "ratelimit", "rate_limited", "too many requests")

PAGES_QUERY = """
query PullPages($filter: QueryPagesFilter, $first: Int, $after: ID) {
  pages(filter: $filter, first: $first, after: $after) {
    edges {
      node {
        url
        wikidotInfo {
          title
          category
          wikidotId
          rating
          voteCount
          realtimeRating
          realtimeVoteCount
          commentCount
          createdAt
          revisionCount
          source
          textContent
          tags
          isPrivate
          thumbnailUrl
          createdBy {
            name
            wikidotInfo { displayName wikidotId unixName }
          }
          parent {
            url
            wikidotInfo { title }
          }
          children {
            url
            wikidotInfo { title }
          }
          coarseVoteRecords {
            timestamp
            userWikidotId
            direction
            user { name }
          }
          revisions {
            index
            wikidotId
            timestamp
            type
            userWikidotId
            comment
            user { name }
          }
        }
        attributions {
          type
          user {
            name
            wikidotInfo { displayName wikidotId }
          }
          date
          order
          isCurrent
        }
        alternateTitles {
          type
          title
        }
        translations {
          url
          wikidotInfo { title }
        }
        translationOf {
          url
          wikidotInfo { title }
        }
      }
      cursor
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
  rateLimit {
    cost
    remaining
    resetAt
  }
}
"""

USERS_QUERY = """
query PullUsers($filter: SearchUsersFilter) {
  searchUsers(query: "", filter: $filter) {
    name
    wikidotInfo {
      displayName
      wikidotId
      unixName
    }
    statistics {
      rank
      totalRating
      meanRating
      pageCount
      pageCountScp
      pageCountTale
      pageCountGoiFormat
      pageCountArtwork
      pageCountLevel
      pageCountEntity
      pageCountObject
    }
  }
  rateLimit {
    cost
    remaining
    resetAt
  }
}
"""


@dataclass
class PageEdge:
    node: dict
    cursor: Optional[str]


@dataclass
class PageBatch:
    edges: list[PageEdge] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_next_page: bool = False
    budget: Optional[QuotaBudget] = None

    @property
    def nodes(self) -> list[dict]:
        return [edge.node for edge in self.edges]


@dataclass
class UserBatch:
    nodes: list[dict] = field(default_factory=list)
    budget: Optional[QuotaBudget] = None


class PageBatchFetcher:
    """Issues exactly one GraphQL query per call; retries belong to the caller."""

    def __init__(
        self,
        endpoint=config.CROM_API_URL,
        base_url=config.TARGET_SITE_URL,
        session=None,
        timeout=config.API_TIMEOUT,
        headers=None,
    ):
        self.endpoint = endpoint
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = dict(headers or config.HEADERS)
        self.stats = {
            "requests": 0,
            "http_status_counts": {200: 0, 429: 0, 500: 0, "other": 0},
            "transport_errors": 0,
        }

    def _record_status(self, status_code):
        if status_code in self.stats["http_status_counts"]:
            self.stats["http_status_counts"][status_code] += 1
        else:
            self.stats["http_status_counts"]["other"] += 1

    def _post(self, query, variables, batch_number, cursor):
        context = {"batch_number": batch_number, "cursor": cursor}
        self.stats["requests"] += 1
        try:
            response = self.session.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.stats["transport_errors"] += 1
            raise TransientFetchError(f"Transport failure: {exc}", **context) from exc

        status = response.status_code
        self._record_status(status)
        if status == 429:
            budget = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                budget = QuotaBudget.from_payload(body.get("rateLimit") or (body.get("data") or {}).get("rateLimit"))
            raise QuotaExhausted("HTTP 429 from API.", budget=budget, **context)
        if status != 200:
            raise TransientFetchError(f"HTTP {status} from API.", status=status, **context)

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Response body is not JSON.", status=status, **context) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError("Response body is not an object.", status=status, **context)

        errors = payload.get("errors")
        if errors:
            messages = [str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors]
            joined = "; ".join(messages)
            if any(marker in joined.lower() for marker in RATE_LIMIT_ERROR_MARKERS):
                data = payload.get("data") or {}
                raise QuotaExhausted(
                    f"GraphQL rate limit: {joined}",
                    budget=QuotaBudget.from_payload(data.get("rateLimit")),
                    **context,
                )
            raise MalformedResponseError(
                f"GraphQL errors: {joined}", status=status, details={"errors": messages}, **context
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedResponseError("Response has no data block.", status=status, **context)
        return data

    def fetch(self, cursor, batch_size, batch_number=0):
        """Fetch one page of nodes after ``cursor``."""
        variables: dict[str, Any] = {
            "filter": {"url": {"startsWith": self.base_url}},
            "first": batch_size,
        }
        if cursor:
            variables["after"] = cursor
        data = self._post(PAGES_QUERY, variables, batch_number, cursor)
        context = {"batch_number": batch_number, "cursor": cursor}

        pages = data.get("pages")
        if not isinstance(pages, dict):
            raise MalformedResponseError("Response has no pages connection.", **context)
        page_info = pages.get("pageInfo")
        if not isinstance(page_info, dict):
            raise MalformedResponseError("Response has no pageInfo.", **context)
        budget = QuotaBudget.from_payload(data.get("rateLimit"))
        if budget is None:
            raise MalformedResponseError("Response has no rateLimit block.", **context)

        edges = []
        for raw_edge in pages.get("edges") or []:
            if not isinstance(raw_edge, dict) or not isinstance(raw_edge.get("node"), dict):
                raise MalformedResponseError("Edge without node.", **context)
            edges.append(PageEdge(node=raw_edge["node"], cursor=raw_edge.get("cursor")))

        has_next_page = bool(page_info.get("hasNextPage"))
        next_cursor = page_info.get("endCursor") or (edges[-1].cursor if edges else None)
        if has_next_page and not next_cursor:
            raise MalformedResponseError("hasNextPage without a continuation cursor.", **context)
        return PageBatch(edges=edges, next_cursor=next_cursor, has_next_page=has_next_page, budget=budget)

    def fetch_users(self, batch_number=0):
        """Fetch every user attached to the target site in one query."""
        variables = {"filter": {"anyBaseUrl": [self.base_url]}}
        data = self._post(USERS_QUERY, variables, batch_number, None)
        users = data.get("searchUsers")
        if not isinstance(users, list):
            raise MalformedResponseError("Response has no searchUsers list.", batch_number=batch_number)
        return UserBatch(
            nodes=[user for user in users if isinstance(user, dict)],
            budget=QuotaBudget.from_payload(data.get("rateLimit")),
        )
