"""
Usage Limits Configuration
Centralized defaults for credit pricing and the admission guards.
"""

# Credit pricing per model type
QUICK_CREDIT_COST = 1  # Fast model
PREMIUM_CREDIT_COST = 2  # Higher quality model

# Global capacity guard (fixed window, all identities)
GLOBAL_GENERATION_LIMIT = 100
GLOBAL_GENERATION_WINDOW_SECONDS = 3600  # 1 hour

# Suspicious activity guard (sliding window, per source IP)
ABUSE_REQUEST_THRESHOLD = 10
ABUSE_WINDOW_SECONDS = 300  # 5 minutes
ABUSE_RETENTION_SECONDS = 3600  # Idle IPs are forgotten after 1 hour

# Admin login brute-force protection (per source IP)
ADMIN_LOGIN_ATTEMPTS = 5
ADMIN_LOGIN_WINDOW_SECONDS = 900  # 15 minutes

# Anonymous usage counters roll over daily in storage
ANON_USAGE_WINDOW_SECONDS = 86400

# In-process anonymous cache bound
ANON_CACHE_MAX_ENTRIES = 10000

# Optimistic usage commit retries before giving up
MAX_COMMIT_ATTEMPTS = 3

# Out-of-band reconciliation of failed commits
RECONCILE_INTERVAL_SECONDS = 60
RECONCILE_MAX_ATTEMPTS = 5
RECONCILE_QUEUE_SIZE = 1000

# Recent commit ids kept per identity so a retried commit is applied once
COMMIT_ID_HISTORY = 50
