"""Bundled incident runbooks used to seed a fresh corpus.

Seeding makes the search surface usable before anyone has uploaded their
own documents.  Each runbook is plain Markdown and goes through the normal
ingestion pipeline, heading-aware chunking included.

The stored filename is the title with whitespace runs replaced by ``-`` plus
``.md`` (``"High Memory Usage"`` -> ``High-Memory-Usage.md``), so seeding
twice replaces the same documents instead of adding new ones.
"""

from __future__ import annotations

import re

from runbook_rag.models.rag import IncomingFile

_WHITESPACE_RE = re.compile(r"\s+")


# ═════════════════════════════════════════════════════════════════════════
# Runbook bodies
# ═════════════════════════════════════════════════════════════════════════

DEMO_RUNBOOKS: list[dict[str, str]] = [
    {
        "title": "Database Connection Issue",
        "content": """# Database Connection Issue

## Symptoms
- Application cannot connect to the database
- Errors such as "Connection refused" or "Connection timeout"
- High latency on database queries

## Steps to Resolve

1. Check database service status
   - Verify the database is running: `systemctl status postgresql`
   - Check recent logs: `journalctl -u postgresql -n 50`

2. Verify network connectivity
   - Test the port: `nc -vz db-host 5432`
   - Check security groups and firewall rules

3. Review connection pool settings
   - Compare `max_connections` in postgresql.conf with active sessions
   - Review the application connection pool size

4. Restart the database if needed
   - `sudo systemctl restart postgresql`

## Prevention
- Monitor connection pool usage
- Alert on connection errors
- Run regular database health checks
""",
    },
    {
        "title": "High Memory Usage",
        "content": """# High Memory Usage

## Symptoms
- Server memory usage above 90%
- Application slowdown and swapping
- OOM (Out of Memory) kills in the kernel log

## Steps to Resolve

1. Identify memory consumers
   - Check top processes: `top -o %MEM`
   - Review memory stats: `free -h`
   - Look for OOM kills: `dmesg | grep -i oom`

2. Check for application memory leaks
   - Review recent deployments
   - Look for unclosed connections and file handles

3. Restart high-memory processes
   - Restart the offending service
   - Consider scaling horizontally

4. Clear caches if safe
   - Application caches
   - Page cache: `sync; echo 1 > /proc/sys/vm/drop_caches`

## Prevention
- Set memory limits on containers
- Track memory trends per release
- Schedule regular leak audits
""",
    },
    {
        "title": "High CPU Usage",
        "content": """# High CPU Usage

## Symptoms
- Sustained CPU utilization above 85%
- Increased request latency
- Load average higher than the core count

## Steps to Resolve

1. Identify hot processes
   - `top -o %CPU` or `htop`
   - Per-thread view: `top -H -p <pid>`

2. Profile the application
   - Capture a CPU profile with py-spy: `py-spy top --pid <pid>`
   - Look for busy loops, regex backtracking and hot serialization paths

3. Check for traffic spikes
   - Compare request rate with the baseline
   - Rate limit or block abusive clients

4. Scale out
   - Add replicas behind the load balancer
   - Raise autoscaling limits temporarily

## Prevention
- Alert on CPU saturation, not just spikes
- Load test before major releases
""",
    },
    {
        "title": "Disk Space Full",
        "content": """# Disk Space Full

## Symptoms
- "No space left on device" errors
- Database refuses writes
- Log rotation failures

## Steps to Resolve

1. Find what is using space
   - `df -h` for filesystem usage
   - `du -xh / --max-depth=2 | sort -h | tail -20`
   - Check inode exhaustion: `df -i`

2. Free space safely
   - Compress or delete rotated logs in /var/log
   - Prune container images: `docker system prune`
   - Remove old release artifacts

3. Check for deleted-but-open files
   - `lsof +L1` and restart the holding process

4. Expand the volume if needed
   - Grow the block device, then `resize2fs` or `xfs_growfs`

## Prevention
- Alert at 80% disk usage
- Enforce log retention policies
""",
    },
    {
        "title": "API Latency Spike",
        "content": """# API Latency Spike

## Symptoms
- p95 or p99 latency above the SLO
- Timeouts reported by clients
- Growing request queues on the load balancer

## Steps to Resolve

1. Locate the slow hop
   - Check tracing dashboards for the slowest span
   - Compare upstream and downstream latency

2. Check dependencies
   - Database slow query log
   - Cache hit rate and eviction count
   - Third-party API status pages

3. Check recent changes
   - Deployments and feature flag flips in the last hour
   - Roll back if the spike lines up with a release

4. Shed load if necessary
   - Enable rate limiting
   - Serve degraded responses for non-critical endpoints

## Prevention
- Latency budgets per dependency
- Canary releases with automatic rollback
""",
    },
    {
        "title": "Deployment Rollback",
        "content": """# Deployment Rollback

## Symptoms
- Error rate increased right after a release
- Health checks failing on new instances
- Customer reports of broken functionality

## Steps to Resolve

1. Confirm the release is the cause
   - Compare error rates before and after the deploy time
   - Check logs for new exception types

2. Roll back
   - Kubernetes: `kubectl rollout undo deployment/<name>`
   - Verify: `kubectl rollout status deployment/<name>`

3. Handle database migrations
   - Check whether the release ran schema migrations
   - Apply the down migration only if it is backward compatible

4. Communicate
   - Post status in the incident channel
   - Open a follow-up ticket for the root cause

## Prevention
- Keep migrations backward compatible
- Use progressive delivery with automated rollback
""",
    },
]


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════


def demo_filename(title: str) -> str:
    """Return the stored filename for a runbook *title*."""
    return f"{_WHITESPACE_RE.sub('-', title.strip())}.md"


def demo_filenames() -> list[str]:
    return [demo_filename(runbook["title"]) for runbook in DEMO_RUNBOOKS]


def demo_files() -> list[IncomingFile]:
    """Return the bundled runbooks as upload-ready files."""
    return [
        IncomingFile(
            filename=demo_filename(runbook["title"]),
            data=runbook["content"].encode("utf-8"),
            content_type="text/markdown",
        )
        for runbook in DEMO_RUNBOOKS
    ]
