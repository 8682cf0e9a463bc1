"""Client-side metrics using the Prometheus client library.

This module defines all metrics in one place: a single inventory of
everything the store and API client measure.  Other modules import
specific metrics and increment/observe them at the point of action.

WHAT WE COUNT
--------------
  API_REQUEST_COUNT / API_REQUEST_DURATION
    Every REST call the client makes, labelled by route TEMPLATE
    ("/events/{id}/join"), never the concrete path.  Concrete ids would
    create one time series per event, which is a cardinality explosion.

  STORE_MUTATIONS
    Every store mutation by action and result (ok / api_error / closed).
    A jump in "api_error" for join-event is the first sign the backend
    is rejecting registrations.

  DATA_RELOADS
    Authenticated-data reloads by trigger (bootstrap, login, broadcast,
    storage).  A reload storm shows up here long before users complain.

  BROADCAST_MESSAGES
    Cross-context invalidation messages, sent vs received.

  STATUS_TRANSITIONS
    Event lifecycle changes observed by the status poller.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# API client metrics
# ---------------------------------------------------------------------------

API_REQUEST_COUNT = Counter(
    "campus_api_requests_total",
    "REST calls made by the API client by method, endpoint and outcome",
    ["method", "endpoint", "outcome"],  # outcome: "ok", "http_error", "transport_error"
)

API_REQUEST_DURATION = Histogram(
    "campus_api_request_duration_seconds",
    "REST call duration in seconds",
    ["method", "endpoint"],
    # Remote API on a free-tier host: cold starts take seconds
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Store metrics
# ---------------------------------------------------------------------------

STORE_MUTATIONS = Counter(
    "campus_store_mutations_total",
    "Membership store mutations by action and result",
    ["action", "result"],
)

DATA_RELOADS = Counter(
    "campus_store_reloads_total",
    "Authenticated data reloads by trigger",
    ["trigger"],  # bootstrap|login|broadcast|storage|manual
)

BROADCAST_MESSAGES = Counter(
    "campus_broadcast_messages_total",
    "Cross-context data-sync messages",
    ["direction"],  # "sent" or "received"
)

STATUS_TRANSITIONS = Counter(
    "campus_event_status_transitions_total",
    "Event lifecycle transitions observed by the status poller",
    ["status"],  # upcoming|started|ended
)
