from prometheus_client import Counter, Gauge, Histogram

# Upstream token endpoint calls
# grant_type: authorization_code, refresh_token
# status: success, error, network_error, timeout
upstream_token_requests_total = Counter(
    'upstream_token_requests_total',
    'Total calls to the provider token endpoint',
    ['grant_type', 'status']
)

upstream_token_request_latency_seconds = Histogram(
    'upstream_token_request_latency_seconds',
    'Latency of provider token endpoint calls in seconds',
    ['grant_type']
)

# outcome: success, or the internal invalid_grant reason
authorization_code_redemptions_total = Counter(
    'authorization_code_redemptions_total',
    'Authorization code redemption attempts',
    ['outcome']
)

proxy_tokens_issued_total = Counter(
    'proxy_tokens_issued_total',
    'Total proxy access tokens minted'
)

# kind: active, pending, codes
oauth_sessions = Gauge(
    'oauth_sessions',
    'Broker store occupancy after the last sweep',
    ['kind']
)

session_sweeps_total = Counter(
    'session_sweeps_total',
    'Total expiry sweeps run by the session store'
)

__all__ = [
    'upstream_token_requests_total',
    'upstream_token_request_latency_seconds',
    'authorization_code_redemptions_total',
    'proxy_tokens_issued_total',
    'oauth_sessions',
    'session_sweeps_total',
]
