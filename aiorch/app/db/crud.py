############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# crud.py: Database CRUD operations for all entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database CRUD operations for aiorch."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from aiorch.app.db.models import (
    BudgetMode,
    BudgetRecord,
    EmbeddingCacheEntry,
    EmbeddingJob,
    EmbeddingJobStatus,
    EmbeddingVector,
    ProviderHealthRecord,
    UsageLedger,
)

# Keeps IN (...) lists well under driver parameter limits
_CHUNK = 500


def _ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware (MariaDB and SQLite return naive datetimes)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _chunks(items: Sequence, size: int = _CHUNK) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# Embedding Job CRUD
async def get_job(db: AsyncSession, job_id: int) -> Optional[EmbeddingJob]:
    """Get embedding job by ID."""
    result = await db.execute(select(EmbeddingJob).where(EmbeddingJob.id == job_id))
    return result.scalar_one_or_none()


async def enqueue_jobs(
    db: AsyncSession,
    items: Sequence[Tuple[str, str, str, str, Optional[Dict[str, Any]]]],
) -> List[Tuple[EmbeddingJob, str]]:
    """
    Enqueue embedding work, idempotent by (source_id, content_hash).

    Args:
        items: (source_id, source_type, content, content_hash, attributes) tuples

    Returns:
        (job, outcome) per item where outcome is one of
        ``created``, ``superseded`` (a pending job for the same source was
        rewritten in place), ``requeued`` (the same content had failed and
        its job was reset to pending) or ``existing`` (same content already
        known)
    """
    source_ids = list({item[0] for item in items})
    by_source: Dict[str, List[EmbeddingJob]] = {}
    for chunk in _chunks(source_ids):
        result = await db.execute(
            select(EmbeddingJob)
            .where(EmbeddingJob.source_id.in_(chunk))
            .order_by(EmbeddingJob.id.desc())
        )
        for job in result.scalars().all():
            by_source.setdefault(job.source_id, []).append(job)

    outcomes: List[Tuple[EmbeddingJob, str]] = []
    for source_id, source_type, content, content_hash, attributes in items:
        jobs = by_source.setdefault(source_id, [])

        # Only the newest job counts: content may have changed back since
        newest = jobs[0] if jobs else None
        if newest is not None and newest.content_hash == content_hash:
            if newest.status == EmbeddingJobStatus.FAILED:
                newest.status = EmbeddingJobStatus.PENDING
                newest.attempts = 0
                newest.last_error = None
                newest.claimed_by = None
                newest.claimed_at = None
                newest.claim_token = None
                if attributes is not None:
                    newest.attributes = attributes
                outcomes.append((newest, "requeued"))
                continue
            if newest.status == EmbeddingJobStatus.PENDING and attributes is not None:
                newest.attributes = attributes
            outcomes.append((newest, "existing"))
            continue

        pending = next((j for j in jobs if j.status == EmbeddingJobStatus.PENDING), None)
        if pending is not None:
            pending.content = content
            pending.content_hash = content_hash
            pending.source_type = source_type
            pending.attributes = attributes
            pending.attempts = 0
            pending.last_error = None
            outcomes.append((pending, "superseded"))
            continue

        job = EmbeddingJob(
            source_id=source_id,
            source_type=source_type,
            content=content,
            content_hash=content_hash,
            attributes=attributes,
            status=EmbeddingJobStatus.PENDING,
            attempts=0,
        )
        db.add(job)
        jobs.insert(0, job)
        outcomes.append((job, "created"))

    await db.flush()
    return outcomes


async def claim_jobs(
    db: AsyncSession,
    worker_id: str,
    limit: int,
    now: Optional[datetime] = None,
) -> List[EmbeddingJob]:
    """
    Atomically claim up to ``limit`` pending jobs for one worker.

    Claims at most one job per source_id, and never a source that already
    has a job in processing. The conditional UPDATE re-checks both
    conditions, so concurrent claimers cannot take the same row. Attempts
    are incremented at claim time.
    """
    now = now or datetime.now(timezone.utc)

    # Derived table: MySQL refuses a subquery on the UPDATE target table otherwise
    processing = (
        select(EmbeddingJob.source_id)
        .where(EmbeddingJob.status == EmbeddingJobStatus.PROCESSING)
        .correlate(None)
        .subquery("processing_sources")
    )
    busy_sources = select(processing.c.source_id).correlate(None)

    result = await db.execute(
        select(EmbeddingJob.id, EmbeddingJob.source_id)
        .where(
            EmbeddingJob.status == EmbeddingJobStatus.PENDING,
            EmbeddingJob.source_id.not_in(busy_sources),
        )
        .order_by(EmbeddingJob.id)
        .limit(limit * 2)
    )
    chosen: List[int] = []
    seen_sources = set()
    for job_id, source_id in result.all():
        if source_id in seen_sources:
            continue
        seen_sources.add(source_id)
        chosen.append(job_id)
        if len(chosen) >= limit:
            break

    if not chosen:
        return []

    token = str(uuid.uuid4())
    await db.execute(
        update(EmbeddingJob)
        .where(
            EmbeddingJob.id.in_(chosen),
            EmbeddingJob.status == EmbeddingJobStatus.PENDING,
            EmbeddingJob.source_id.not_in(busy_sources),
        )
        .values(
            status=EmbeddingJobStatus.PROCESSING,
            claimed_by=worker_id,
            claimed_at=now,
            claim_token=token,
            attempts=EmbeddingJob.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )

    claimed = await db.execute(
        select(EmbeddingJob)
        .where(EmbeddingJob.claim_token == token)
        .order_by(EmbeddingJob.id)
        .execution_options(populate_existing=True)
    )
    return list(claimed.scalars().all())


async def complete_jobs(
    db: AsyncSession,
    job_ids: Sequence[int],
    claim_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Mark claimed jobs completed. Returns rows updated."""
    now = now or datetime.now(timezone.utc)
    total = 0
    for chunk in _chunks(list(job_ids)):
        conditions = [
            EmbeddingJob.id.in_(chunk),
            EmbeddingJob.status == EmbeddingJobStatus.PROCESSING,
        ]
        if claim_token is not None:
            conditions.append(EmbeddingJob.claim_token == claim_token)
        result = await db.execute(
            update(EmbeddingJob)
            .where(*conditions)
            .values(
                status=EmbeddingJobStatus.COMPLETED,
                completed_at=now,
                claim_token=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        total += result.rowcount or 0
    return total


async def fail_jobs(
    db: AsyncSession,
    job_ids: Sequence[int],
    error: str,
    max_attempts: int,
    claim_token: Optional[str] = None,
    permanent: bool = False,
) -> Tuple[int, int]:
    """
    Record a failed attempt for claimed jobs.

    Jobs whose attempts reached ``max_attempts`` (or all of them when
    ``permanent``) become failed; the rest return to pending.

    Returns:
        (requeued, failed) row counts
    """
    error = error[:2000]
    requeued = failed = 0
    for chunk in _chunks(list(job_ids)):
        base = [
            EmbeddingJob.id.in_(chunk),
            EmbeddingJob.status == EmbeddingJobStatus.PROCESSING,
        ]
        if claim_token is not None:
            base.append(EmbeddingJob.claim_token == claim_token)

        exhausted = base if permanent else base + [EmbeddingJob.attempts >= max_attempts]
        result = await db.execute(
            update(EmbeddingJob)
            .where(*exhausted)
            .values(
                status=EmbeddingJobStatus.FAILED,
                last_error=error,
                claim_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        failed += result.rowcount or 0

        if not permanent:
            result = await db.execute(
                update(EmbeddingJob)
                .where(*base, EmbeddingJob.attempts < max_attempts)
                .values(
                    status=EmbeddingJobStatus.PENDING,
                    last_error=error,
                    claimed_by=None,
                    claimed_at=None,
                    claim_token=None,
                )
                .execution_options(synchronize_session=False)
            )
            requeued += result.rowcount or 0
    return requeued, failed


async def release_jobs(
    db: AsyncSession,
    job_ids: Sequence[int],
    claim_token: Optional[str] = None,
    refund_attempt: bool = True,
    reason: Optional[str] = None,
) -> int:
    """Return claimed jobs to pending, optionally refunding the claim's attempt."""
    total = 0
    values: Dict[str, Any] = {
        "status": EmbeddingJobStatus.PENDING,
        "claimed_by": None,
        "claimed_at": None,
        "claim_token": None,
    }
    if refund_attempt:
        values["attempts"] = case(
            (EmbeddingJob.attempts > 0, EmbeddingJob.attempts - 1),
            else_=0,
        )
    if reason is not None:
        values["last_error"] = reason[:2000]

    for chunk in _chunks(list(job_ids)):
        conditions = [
            EmbeddingJob.id.in_(chunk),
            EmbeddingJob.status == EmbeddingJobStatus.PROCESSING,
        ]
        if claim_token is not None:
            conditions.append(EmbeddingJob.claim_token == claim_token)
        result = await db.execute(
            update(EmbeddingJob)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        total += result.rowcount or 0
    return total


async def reclaim_stale_jobs(
    db: AsyncSession,
    older_than: datetime,
    max_attempts: int,
) -> Tuple[int, int]:
    """
    Reset jobs stuck in processing since before ``older_than``.

    Returns:
        (reset_to_pending, marked_failed)
    """
    stale = [
        EmbeddingJob.status == EmbeddingJobStatus.PROCESSING,
        EmbeddingJob.claimed_at < older_than,
    ]
    failed = await db.execute(
        update(EmbeddingJob)
        .where(*stale, EmbeddingJob.attempts >= max_attempts)
        .values(
            status=EmbeddingJobStatus.FAILED,
            last_error="Claim expired after maximum attempts",
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )
    reset = await db.execute(
        update(EmbeddingJob)
        .where(*stale, EmbeddingJob.attempts < max_attempts)
        .values(
            status=EmbeddingJobStatus.PENDING,
            last_error="Claim expired",
            claimed_by=None,
            claimed_at=None,
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )
    return reset.rowcount or 0, failed.rowcount or 0


async def count_jobs_by_status(db: AsyncSession) -> Dict[str, int]:
    """Job counts keyed by status value; every status is present."""
    result = await db.execute(
        select(EmbeddingJob.status, func.count(EmbeddingJob.id)).group_by(EmbeddingJob.status)
    )
    counts = {status.value: 0 for status in EmbeddingJobStatus}
    for status, count in result.all():
        key = status.value if isinstance(status, EmbeddingJobStatus) else str(status)
        counts[key] = int(count)
    return counts


async def count_jobs_completed_since(db: AsyncSession, since: datetime) -> int:
    result = await db.execute(
        select(func.count(EmbeddingJob.id)).where(
            and_(
                EmbeddingJob.status == EmbeddingJobStatus.COMPLETED,
                EmbeddingJob.completed_at >= since,
            )
        )
    )
    return int(result.scalar_one())


# Embedding Cache CRUD
async def get_cache_entries(
    db: AsyncSession,
    keys: Sequence[Tuple[str, str]],
    now: datetime,
) -> Dict[Tuple[str, str], EmbeddingCacheEntry]:
    """Live durable cache entries for (content_hash, model_id) keys; bumps hit counts."""
    found: Dict[Tuple[str, str], EmbeddingCacheEntry] = {}
    by_model: Dict[str, List[str]] = {}
    for content_hash, model_id in keys:
        by_model.setdefault(model_id, []).append(content_hash)

    for model_id, hashes in by_model.items():
        for chunk in _chunks(hashes):
            result = await db.execute(
                select(EmbeddingCacheEntry).where(
                    EmbeddingCacheEntry.model_id == model_id,
                    EmbeddingCacheEntry.content_hash.in_(chunk),
                    EmbeddingCacheEntry.expires_at > now,
                )
            )
            for entry in result.scalars().all():
                entry.hit_count += 1
                found[(entry.content_hash, entry.model_id)] = entry
    await db.flush()
    return found


async def put_cache_entries(
    db: AsyncSession,
    entries: Sequence[Tuple[str, str, Any, datetime]],
) -> None:
    """Insert or refresh (content_hash, model_id, response, expires_at) rows."""
    for content_hash, model_id, response, expires_at in entries:
        entry = await db.get(EmbeddingCacheEntry, (content_hash, model_id))
        if entry is None:
            db.add(
                EmbeddingCacheEntry(
                    content_hash=content_hash,
                    model_id=model_id,
                    response=response,
                    expires_at=expires_at,
                    hit_count=0,
                )
            )
        else:
            entry.response = response
            entry.expires_at = expires_at
    await db.flush()


async def delete_cache_entries(db: AsyncSession, keys: Sequence[Tuple[str, str]]) -> int:
    total = 0
    for content_hash, model_id in keys:
        result = await db.execute(
            delete(EmbeddingCacheEntry).where(
                EmbeddingCacheEntry.content_hash == content_hash,
                EmbeddingCacheEntry.model_id == model_id,
            )
        )
        total += result.rowcount or 0
    return total


async def delete_expired_cache_entries(db: AsyncSession, now: datetime) -> int:
    result = await db.execute(
        delete(EmbeddingCacheEntry).where(EmbeddingCacheEntry.expires_at <= now)
    )
    return result.rowcount or 0


# Embedding Vector CRUD
async def find_current_vectors_by_hashes(
    db: AsyncSession,
    content_hashes: Sequence[str],
    model_id: str,
) -> Dict[str, EmbeddingVector]:
    """One current vector per content hash (any source) for the model."""
    found: Dict[str, EmbeddingVector] = {}
    for chunk in _chunks(list(set(content_hashes))):
        result = await db.execute(
            select(EmbeddingVector).where(
                EmbeddingVector.model_id == model_id,
                EmbeddingVector.is_current.is_(True),
                EmbeddingVector.content_hash.in_(chunk),
            )
        )
        for row in result.scalars().all():
            found.setdefault(row.content_hash, row)
    return found


async def upsert_vectors(
    db: AsyncSession,
    records: Sequence[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Tuple[List[EmbeddingVector], List[int]]:
    """
    Write current vectors, superseding the previous current row per (source_id, model_id).

    A record whose content hash equals the source's current row is left as
    is and the existing row is returned.

    Args:
        records: dicts with source_id, source_type, content_hash, model_id,
            vector and optional attributes

    Returns:
        (current rows in input order, superseded row ids)
    """
    now = now or datetime.now(timezone.utc)
    rows: List[EmbeddingVector] = []
    superseded_ids: List[int] = []

    by_model: Dict[str, List[Dict[str, Any]]] = {}
    for record in records:
        by_model.setdefault(record["model_id"], []).append(record)

    current: Dict[Tuple[str, str], EmbeddingVector] = {}
    for model_id, model_records in by_model.items():
        source_ids = list({r["source_id"] for r in model_records})
        for chunk in _chunks(source_ids):
            result = await db.execute(
                select(EmbeddingVector).where(
                    EmbeddingVector.model_id == model_id,
                    EmbeddingVector.is_current.is_(True),
                    EmbeddingVector.source_id.in_(chunk),
                )
            )
            for row in result.scalars().all():
                current[(row.source_id, model_id)] = row

    for record in records:
        key = (record["source_id"], record["model_id"])
        existing = current.get(key)
        if existing is not None and existing.content_hash == record["content_hash"]:
            rows.append(existing)
            continue
        if existing is not None:
            existing.is_current = False
            existing.superseded_at = now
            superseded_ids.append(existing.id)

        vector = [float(v) for v in record["vector"]]
        row = EmbeddingVector(
            source_id=record["source_id"],
            source_type=record.get("source_type") or "message",
            content_hash=record["content_hash"],
            model_id=record["model_id"],
            dimension=len(vector),
            vector=vector,
            attributes=record.get("attributes"),
            is_current=True,
            created_at=record.get("created_at") or now,
        )
        db.add(row)
        current[key] = row
        rows.append(row)

    await db.flush()
    return rows, superseded_ids


async def get_current_vectors(
    db: AsyncSession,
    model_id: Optional[str] = None,
    after_id: int = 0,
    limit: int = 5000,
) -> List[EmbeddingVector]:
    """Current vectors with id > after_id, ordered by id (incremental index sync)."""
    query = select(EmbeddingVector).where(
        EmbeddingVector.is_current.is_(True),
        EmbeddingVector.id > after_id,
    )
    if model_id is not None:
        query = query.where(EmbeddingVector.model_id == model_id)
    result = await db.execute(query.order_by(EmbeddingVector.id).limit(limit))
    return list(result.scalars().all())


async def get_vectors_by_ids(db: AsyncSession, ids: Sequence[int]) -> List[EmbeddingVector]:
    rows: List[EmbeddingVector] = []
    for chunk in _chunks(list(ids)):
        result = await db.execute(select(EmbeddingVector).where(EmbeddingVector.id.in_(chunk)))
        rows.extend(result.scalars().all())
    return rows


async def count_current_vectors(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(EmbeddingVector.model_id, func.count(EmbeddingVector.id))
        .where(EmbeddingVector.is_current.is_(True))
        .group_by(EmbeddingVector.model_id)
    )
    return {model_id: int(count) for model_id, count in result.all()}


# Provider Health CRUD
async def get_all_provider_health(db: AsyncSession) -> List[ProviderHealthRecord]:
    result = await db.execute(select(ProviderHealthRecord))
    return list(result.scalars().all())


async def upsert_provider_health(
    db: AsyncSession,
    provider_id: str,
    state: str,
    failure_count: int,
    window_start: Optional[datetime],
    opened_at: Optional[datetime],
) -> ProviderHealthRecord:
    """Persist circuit breaker state for a provider."""
    record = await db.get(ProviderHealthRecord, provider_id)
    if record is None:
        record = ProviderHealthRecord(provider_id=provider_id)
        db.add(record)
    record.state = state
    record.failure_count = failure_count
    record.window_start = window_start
    record.opened_at = opened_at
    await db.flush()
    return record


async def update_provider_latency(
    db: AsyncSession,
    provider_id: str,
    latency_ema_ms: float,
) -> None:
    record = await db.get(ProviderHealthRecord, provider_id)
    if record is None:
        db.add(ProviderHealthRecord(provider_id=provider_id, latency_ema_ms=latency_ema_ms))
    else:
        record.latency_ema_ms = latency_ema_ms
    await db.flush()


# Budget CRUD
async def get_budget(db: AsyncSession, scope_key: str) -> Optional[BudgetRecord]:
    """Get budget by scope key, always re-read from the database."""
    result = await db.execute(
        select(BudgetRecord)
        .where(BudgetRecord.scope_key == scope_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_all_budgets(db: AsyncSession) -> List[BudgetRecord]:
    result = await db.execute(select(BudgetRecord).order_by(BudgetRecord.scope_key))
    return list(result.scalars().all())


async def upsert_budget(
    db: AsyncSession,
    scope_key: str,
    limit: float,
    mode: BudgetMode,
    window_seconds: int,
    window_start: datetime,
    spent: Optional[float] = None,
) -> BudgetRecord:
    """Create a budget or update its limit/mode/window length (spent is kept unless given)."""
    budget = await get_budget(db, scope_key)
    if budget is None:
        budget = BudgetRecord(
            scope_key=scope_key,
            limit=limit,
            spent=spent or 0.0,
            mode=mode,
            window_start=window_start,
            window_seconds=window_seconds,
        )
        db.add(budget)
    else:
        budget.limit = limit
        budget.mode = mode
        budget.window_seconds = window_seconds
        if spent is not None:
            budget.spent = spent
    await db.flush()
    return budget


async def roll_budget_window(
    db: AsyncSession,
    scope_key: str,
    expected_window_start: datetime,
    new_window_start: datetime,
) -> bool:
    """Compare-and-swap window rollover; True if this caller performed it."""
    result = await db.execute(
        update(BudgetRecord)
        .where(
            BudgetRecord.scope_key == scope_key,
            BudgetRecord.window_start == expected_window_start,
        )
        .values(window_start=new_window_start, spent=0.0)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def reserve_budget(
    db: AsyncSession,
    scope_key: str,
    amount: float,
    enforce_limit: bool,
) -> Optional[BudgetRecord]:
    """
    Atomically hold ``amount`` against a budget.

    With ``enforce_limit`` the hold is only taken while
    spent + reserved + amount stays within the limit; None means refused.
    """
    stmt = update(BudgetRecord).where(BudgetRecord.scope_key == scope_key)
    if enforce_limit:
        stmt = stmt.where(BudgetRecord.spent + BudgetRecord.reserved + amount <= BudgetRecord.limit)
    result = await db.execute(
        stmt.values(reserved=BudgetRecord.reserved + amount).execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        return None
    return await get_budget(db, scope_key)


async def add_budget_spend(
    db: AsyncSession,
    scope_key: str,
    amount: float,
    clamp_to_limit: bool,
    release: float = 0.0,
) -> Optional[BudgetRecord]:
    """Atomically add spend and drop ``release`` from the reserved amount.

    When clamping, spent never exceeds the limit; reserved never goes below zero.
    """
    if clamp_to_limit:
        new_spent = case(
            (BudgetRecord.spent + amount > BudgetRecord.limit, BudgetRecord.limit),
            else_=BudgetRecord.spent + amount,
        )
    else:
        new_spent = BudgetRecord.spent + amount
    new_reserved = case(
        (BudgetRecord.reserved - release < 0, 0.0),
        else_=BudgetRecord.reserved - release,
    )
    await db.execute(
        update(BudgetRecord)
        .where(BudgetRecord.scope_key == scope_key)
        .values(spent=new_spent, reserved=new_reserved)
        .execution_options(synchronize_session=False)
    )
    return await get_budget(db, scope_key)


async def create_usage_entry(
    db: AsyncSession,
    scope_key: str,
    kind: str,
    cost: float,
    provider_id: Optional[str] = None,
    model_id: Optional[str] = None,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
) -> UsageLedger:
    """Create usage ledger entry."""
    entry = UsageLedger(
        scope_key=scope_key,
        kind=kind,
        provider_id=provider_id,
        model_id=model_id,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost=cost,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_scope_usage_since(db: AsyncSession, scope_key: str, since: datetime) -> float:
    """Sum of ledger cost for a scope since ``since``."""
    result = await db.execute(
        select(func.coalesce(func.sum(UsageLedger.cost), 0.0)).where(
            UsageLedger.scope_key == scope_key,
            UsageLedger.created_at >= since,
        )
    )
    return float(result.scalar_one())
