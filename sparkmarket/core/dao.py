"""
Data access for accounts, claims, votes and the economy record.

Every balance or pool mutation is a single conditional statement (or a short
transaction around several) so concurrent requests cannot lose updates.
"""

import json
import sqlite3
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import EconomyConfig
from .db import get_db
from .schema import (
    Account,
    Claim,
    ClaimStatus,
    ClaimType,
    Modification,
    Vote,
    VoteAction,
    VoteMeta,
)

# Upper bound on rows scanned by a geohash prefix query before the radius filter
PREFIX_SCAN_LIMIT = 1000


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        user_id=row["user_id"],
        energy=row["energy"],
        reputation=row["reputation"],
        last_action_at=row["last_action_at"],
        last_ubi_at=row["last_ubi_at"],
        last_active_at=row["last_active_at"],
        pings_today=row["pings_today"],
        quota_reset_date=row["quota_reset_date"],
        staked_energy=row["staked_energy"],
        created_at=row["created_at"],
    )


def _row_to_claim(row: sqlite3.Row, cells: List[str]) -> Claim:
    modifications = [
        Modification(content=m["content"], timestamp=m["timestamp"], verified_by=m.get("verified_by", []))
        for m in json.loads(row["modifications"] or "[]")
    ]
    return Claim(
        id=row["id"],
        author_id=row["author_id"],
        lat=row["lat"],
        lon=row["lon"],
        cells=cells,
        geohash=row["geohash"],
        content=row["content"],
        claim_type=ClaimType(row["claim_type"]),
        radius=row["radius"],
        spatial_rent=row["spatial_rent"],
        deposit=row["deposit"],
        staked_energy=row["staked_energy"],
        verifier_reward_pool=row["verifier_reward_pool"],
        upvote_weight=row["upvote_weight"],
        downvote_weight=row["downvote_weight"],
        confidence=row["confidence"],
        verifier_entropy=row["verifier_entropy"],
        status=ClaimStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        valid_until=row["valid_until"],
        revision=row["revision"],
        modifications=modifications,
    )


def _row_to_vote(row: sqlite3.Row) -> Vote:
    return Vote(
        id=row["id"],
        claim_id=row["claim_id"],
        voter_id=row["voter_id"],
        action=VoteAction(row["action"]),
        voter_lat=row["voter_lat"],
        voter_lon=row["voter_lon"],
        distance_m=row["distance_m"],
        grid_distance=row["grid_distance"],
        weight=row["weight"],
        meta=VoteMeta(
            device_id_hash=row["device_id_hash"],
            ip_subnet=row["ip_subnet"],
            bluetooth_peers=row["bluetooth_peers"],
            reported_distance_m=row["reported_distance_m"],
            claim_author_id=row["claim_author_id"],
        ),
        created_at=row["created_at"],
    )


def _claims_with_cells(conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Claim]:
    if not rows:
        return []
    ids = [row["id"] for row in rows]
    placeholders = ",".join("?" for _ in ids)
    cells: Dict[str, List[str]] = {claim_id: [] for claim_id in ids}
    for cell_row in conn.execute(
        f"SELECT claim_id, cell FROM claim_cells WHERE claim_id IN ({placeholders}) ORDER BY rowid",
        ids
    ):
        cells[cell_row["claim_id"]].append(cell_row["cell"])
    return [_row_to_claim(row, cells[row["id"]]) for row in rows]


# --- Accounts -----------------------------------------------------------------

def create_account(user_id: str, energy: int, now: float) -> Account:
    """Create an account if it does not exist yet and return it."""
    with get_db() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO accounts (user_id, energy, created_at, last_active_at) VALUES (?, ?, ?, ?)",
            (user_id, energy, now, now)
        )
        conn.commit()
    return get_account(user_id)


def get_account(user_id: str) -> Optional[Account]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_account(row) if row else None


def try_debit(user_id: str, cost: int, ubi_credit: int, seen_last_action_at: Optional[float],
              seen_last_ubi_at: Optional[float], new_last_ubi_at: Optional[float], now: float) -> Optional[int]:
    """
    Compare-and-set debit against the account row as it was read.

    The row only changes if the rate-limit and UBI clocks are still the values
    the caller saw and the balance (plus any UBI credit) covers the cost.

    Returns:
        The new balance, or None if the row moved underneath the caller.
    """
    with get_db() as conn:
        cursor = conn.execute(
            '''
            UPDATE accounts
            SET energy = energy + ? - ?,
                last_action_at = ?,
                last_ubi_at = ?,
                last_active_at = ?
            WHERE user_id = ?
              AND energy + ? >= ?
              AND last_action_at IS ?
              AND last_ubi_at IS ?
            ''',
            (ubi_credit, cost, now, new_last_ubi_at, now, user_id,
             ubi_credit, cost, seen_last_action_at, seen_last_ubi_at)
        )
        if cursor.rowcount != 1:
            conn.rollback()
            return None
        balance = conn.execute("SELECT energy FROM accounts WHERE user_id = ?", (user_id,)).fetchone()[0]
        conn.commit()
        return balance


def claim_free_ping(user_id: str, now: float, floor_sec: float, today: str, quota: int) -> bool:
    """
    Take one free ping from today's quota and advance the rate-limit clock.

    False if the floor has not elapsed or the quota is already used up. Both
    conditions are checked by the same statement that counts the ping.
    """
    with get_db() as conn:
        cursor = conn.execute(
            '''
            UPDATE accounts
            SET last_action_at = ?, last_active_at = ?,
                pings_today = CASE WHEN quota_reset_date = ? THEN pings_today + 1 ELSE 1 END,
                quota_reset_date = ?
            WHERE user_id = ?
              AND (last_action_at IS NULL OR last_action_at <= ?)
              AND (quota_reset_date IS NOT ? OR pings_today < ?)
            ''',
            (now, now, today, today, user_id, now - floor_sec, today, quota)
        )
        conn.commit()
        return cursor.rowcount == 1


def record_ping_usage(user_id: str, today: str):
    """Count a ping against today's quota, resetting the counter on a new day."""
    with get_db() as conn:
        conn.execute(
            '''
            UPDATE accounts
            SET pings_today = CASE WHEN quota_reset_date = ? THEN pings_today + 1 ELSE 1 END,
                quota_reset_date = ?
            WHERE user_id = ?
            ''',
            (today, today, user_id)
        )
        conn.commit()


def credit_energy(credits: Dict[str, int]):
    """Bulk credit energy to several accounts."""
    rows = [(amount, user_id) for user_id, amount in credits.items() if amount > 0]
    if not rows:
        return
    with get_db() as conn:
        conn.executemany("UPDATE accounts SET energy = energy + ? WHERE user_id = ?", rows)
        conn.commit()


def adjust_reputation(user_id: str, delta: float, low: float, high: float) -> Optional[Tuple[float, float]]:
    """
    Add delta to an account's reputation, clamped to [low, high] and rounded to 2 decimals.

    Returns:
        (before, after), or None if the account does not exist.
    """
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT reputation FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            conn.rollback()
            return None
        before = row["reputation"]
        after = round(min(max(before + delta, low), high), 2)
        if after != before:
            conn.execute("UPDATE accounts SET reputation = ? WHERE user_id = ?", (after, user_id))
        conn.commit()
        return before, after


def add_staked_energy(user_id: str, delta: int):
    with get_db() as conn:
        conn.execute(
            "UPDATE accounts SET staked_energy = MAX(0, staked_energy + ?) WHERE user_id = ?",
            (delta, user_id)
        )
        conn.commit()


def count_accounts() -> int:
    with get_db() as conn:
        return conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]


def count_citizens(active_since: float, stake_threshold: int) -> int:
    with get_db() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM accounts WHERE last_active_at > ? AND staked_energy >= ?",
            (active_since, stake_threshold)
        ).fetchone()[0]


def credit_citizens(amount: int, active_since: float, stake_threshold: int) -> int:
    """Credit every eligible citizen in one statement. Returns the number credited."""
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE accounts SET energy = energy + ? WHERE last_active_at > ? AND staked_energy >= ?",
            (amount, active_since, stake_threshold)
        )
        conn.commit()
        return cursor.rowcount


# --- Claims -------------------------------------------------------------------

def insert_claim(claim: Claim):
    with get_db() as conn:
        conn.execute(
            '''
            INSERT INTO claims (
                id, author_id, lat, lon, geohash, content, claim_type, radius,
                spatial_rent, deposit, staked_energy, verifier_reward_pool,
                upvote_weight, downvote_weight, confidence, verifier_entropy, status,
                created_at, expires_at, valid_until, revision, modifications, snapshot_updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                claim.id, claim.author_id, claim.lat, claim.lon, claim.geohash, claim.content,
                claim.claim_type.value, claim.radius, claim.spatial_rent, claim.deposit,
                claim.staked_energy, claim.verifier_reward_pool, claim.upvote_weight,
                claim.downvote_weight, claim.confidence, claim.verifier_entropy, claim.status.value,
                claim.created_at, claim.expires_at, claim.valid_until, claim.revision,
                json.dumps([m.to_dict() for m in claim.modifications]), claim.created_at
            )
        )
        conn.executemany(
            "INSERT INTO claim_cells (claim_id, cell) VALUES (?, ?)",
            [(claim.id, cell) for cell in claim.cells]
        )
        conn.commit()


def get_claim(claim_id: str, now: Optional[float] = None) -> Optional[Claim]:
    """Fetch a claim that has not passed its hard TTL."""
    now = time.time() if now is None else now
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM claims WHERE id = ? AND valid_until > ?", (claim_id, now)
        ).fetchone()
        claims = _claims_with_cells(conn, [row] if row else [])
        return claims[0] if claims else None


def get_claims(claim_ids: Iterable[str], now: float) -> Dict[str, Claim]:
    ids = list(dict.fromkeys(claim_ids))
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT * FROM claims WHERE id IN ({placeholders}) AND valid_until > ?", ids + [now]
        ).fetchall()
        return {claim.id: claim for claim in _claims_with_cells(conn, rows)}


def count_active_author_claims_in_cell(author_id: str, cell: str, now: float) -> int:
    with get_db() as conn:
        return conn.execute(
            '''
            SELECT COUNT(*) FROM claims c
            JOIN claim_cells cc ON cc.claim_id = c.id
            WHERE c.author_id = ? AND c.status = 'ACTIVE' AND cc.cell = ? AND c.valid_until > ?
            ''',
            (author_id, cell, now)
        ).fetchone()[0]


def list_active_claims_in_cell(cell: str, now: float, limit: int) -> List[Claim]:
    with get_db() as conn:
        rows = conn.execute(
            '''
            SELECT c.* FROM claims c
            JOIN claim_cells cc ON cc.claim_id = c.id
            WHERE cc.cell = ? AND c.status = 'ACTIVE' AND c.valid_until > ?
            ORDER BY c.created_at DESC
            LIMIT ?
            ''',
            (cell, now, limit)
        ).fetchall()
        return _claims_with_cells(conn, rows)


def list_active_claims_by_geohash(prefixes: List[str], now: float) -> List[Claim]:
    """Active claims whose geohash starts with any of the prefixes, newest first."""
    if not prefixes:
        return []
    clause = " OR ".join("geohash LIKE ?" for _ in prefixes)
    with get_db() as conn:
        rows = conn.execute(
            f'''
            SELECT * FROM claims
            WHERE ({clause}) AND status = 'ACTIVE' AND valid_until > ?
            ORDER BY created_at DESC
            LIMIT ?
            ''',
            [f"{prefix}%" for prefix in prefixes] + [now, PREFIX_SCAN_LIMIT]
        ).fetchall()
        return _claims_with_cells(conn, rows)


def list_claims_by_author(author_id: str, now: float, limit: int,
                          statuses: Optional[List[ClaimStatus]] = None) -> List[Claim]:
    params: list = [author_id, now]
    status_clause = ""
    if statuses:
        status_clause = f"AND status IN ({','.join('?' for _ in statuses)})"
        params.extend(s.value for s in statuses)
    params.append(limit)
    with get_db() as conn:
        rows = conn.execute(
            f'''
            SELECT * FROM claims
            WHERE author_id = ? AND valid_until > ? {status_clause}
            ORDER BY created_at DESC
            LIMIT ?
            ''',
            params
        ).fetchall()
        return _claims_with_cells(conn, rows)


def record_vote(vote: Vote, now: float,
                score: Callable[[float, float], Tuple[float, ClaimStatus]]) -> Claim:
    """
    Insert a vote and fold its weight into the claim's snapshot in one transaction.

    The (claim_id, voter_id) uniqueness constraint rejects concurrent duplicates
    with sqlite3.IntegrityError. score maps (upvote_weight, downvote_weight) to
    the new (confidence, status).

    Returns:
        The claim as it stands after the vote, or raises LookupError if it is no
        longer active.
    """
    up = vote.weight if vote.action == VoteAction.CONFIRM else 0.0
    down = vote.weight if vote.action == VoteAction.CHALLENGE else 0.0

    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute(
                '''
                UPDATE claims
                SET upvote_weight = upvote_weight + ?, downvote_weight = downvote_weight + ?
                WHERE id = ? AND status = 'ACTIVE' AND valid_until > ?
                ''',
                (up, down, vote.claim_id, now)
            )
            if cursor.rowcount != 1:
                raise LookupError(f"Claim {vote.claim_id} is not active")

            conn.execute(
                '''
                INSERT INTO votes (
                    claim_id, voter_id, action, voter_lat, voter_lon, distance_m, grid_distance,
                    weight, claim_author_id, device_id_hash, ip_subnet, bluetooth_peers,
                    reported_distance_m, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    vote.claim_id, vote.voter_id, vote.action.value, vote.voter_lat, vote.voter_lon,
                    vote.distance_m, vote.grid_distance, vote.weight, vote.meta.claim_author_id,
                    vote.meta.device_id_hash, vote.meta.ip_subnet, vote.meta.bluetooth_peers,
                    vote.meta.reported_distance_m, vote.created_at
                )
            )

            row = conn.execute(
                "SELECT upvote_weight, downvote_weight FROM claims WHERE id = ?", (vote.claim_id,)
            ).fetchone()
            confidence, status = score(row["upvote_weight"], row["downvote_weight"])
            conn.execute(
                "UPDATE claims SET confidence = ?, status = ?, snapshot_updated_at = ? WHERE id = ?",
                (confidence, status.value, now, vote.claim_id)
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        row = conn.execute("SELECT * FROM claims WHERE id = ?", (vote.claim_id,)).fetchone()
        return _claims_with_cells(conn, [row])[0]


def credit_reward_pools(credits: Dict[str, int]):
    """Bulk credit verifier reward pools."""
    rows = [(amount, claim_id) for claim_id, amount in credits.items() if amount > 0]
    if not rows:
        return
    with get_db() as conn:
        conn.executemany(
            "UPDATE claims SET verifier_reward_pool = verifier_reward_pool + ? WHERE id = ?", rows
        )
        conn.commit()


def settle_liquidation(claim_id: str, seen_pool: int, seen_deposit: int, payouts: Dict[str, int]) -> bool:
    """
    Zero a claim's pool, deposit and stake and pay out the shares atomically.

    Nothing happens unless the pool and deposit still hold the values the
    payouts were computed from, so a repeated liquidation pays nobody twice.
    """
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute(
                '''
                UPDATE claims SET verifier_reward_pool = 0, staked_energy = 0, deposit = 0
                WHERE id = ? AND verifier_reward_pool = ? AND deposit = ?
                ''',
                (claim_id, seen_pool, seen_deposit)
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            conn.executemany(
                "UPDATE accounts SET energy = energy + ? WHERE user_id = ?",
                [(amount, user_id) for user_id, amount in payouts.items() if amount > 0]
            )
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise


def withdraw_from_pool(claim_id: str, user_id: str, amount: int) -> Optional[int]:
    """
    Move amount from a claim's reward pool to an account.

    Returns:
        The remaining pool, or None if the pool no longer covers the amount.
    """
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute(
                '''
                UPDATE claims SET verifier_reward_pool = verifier_reward_pool - ?
                WHERE id = ? AND verifier_reward_pool >= ?
                ''',
                (amount, claim_id, amount)
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            conn.execute("UPDATE accounts SET energy = energy + ? WHERE user_id = ?", (amount, user_id))
            remaining = conn.execute(
                "SELECT verifier_reward_pool FROM claims WHERE id = ?", (claim_id,)
            ).fetchone()[0]
            conn.commit()
            return remaining
        except Exception:
            conn.rollback()
            raise


def retire_claim(claim_id: str, author_id: str, modification: Modification, scrub_content: Optional[str] = None) -> bool:
    """
    Move an author's claim to EXPIRED, append to its modification log and release
    its stake from the author's bookkeeping. With scrub_content the text is
    replaced and the author unlinked.

    Returns:
        False if the claim does not exist or is not the author's.
    """
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT modifications, staked_energy, status FROM claims WHERE id = ? AND author_id = ?",
                (claim_id, author_id)
            ).fetchone()
            if row is None:
                conn.rollback()
                return False

            log = json.loads(row["modifications"] or "[]")
            log.append(modification.to_dict())

            if scrub_content is not None:
                conn.execute(
                    '''
                    UPDATE claims SET status = 'EXPIRED', content = ?, author_id = NULL,
                        revision = revision + 1, modifications = ?
                    WHERE id = ?
                    ''',
                    (scrub_content, json.dumps(log), claim_id)
                )
            else:
                conn.execute(
                    '''
                    UPDATE claims SET status = 'EXPIRED', revision = revision + 1, modifications = ?
                    WHERE id = ?
                    ''',
                    (json.dumps(log), claim_id)
                )

            if row["status"] == ClaimStatus.ACTIVE.value and row["staked_energy"] > 0:
                conn.execute(
                    "UPDATE accounts SET staked_energy = MAX(0, staked_energy - ?) WHERE user_id = ?",
                    (row["staked_energy"], author_id)
                )
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise


def delete_expired_claims(now: float) -> int:
    """Hard TTL: remove claims past valid_until (their cells cascade)."""
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM claims WHERE valid_until <= ?", (now,))
        conn.commit()
        return cursor.rowcount


# --- Votes --------------------------------------------------------------------

def vote_exists(claim_id: str, voter_id: str) -> bool:
    with get_db() as conn:
        return conn.execute(
            "SELECT 1 FROM votes WHERE claim_id = ? AND voter_id = ?", (claim_id, voter_id)
        ).fetchone() is not None


def count_votes_on_author(voter_id: str, author_id: str) -> int:
    """How many retained votes this voter has cast on any claim by this author."""
    with get_db() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM votes WHERE voter_id = ? AND claim_author_id = ?",
            (voter_id, author_id)
        ).fetchone()[0]


def list_votes_for_claim(claim_id: str) -> List[Vote]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM votes WHERE claim_id = ? ORDER BY id", (claim_id,)
        ).fetchall()
        return [_row_to_vote(row) for row in rows]


def list_votes_by_voter(voter_id: str, limit: int) -> List[Vote]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM votes WHERE voter_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (voter_id, limit)
        ).fetchall()
        return [_row_to_vote(row) for row in rows]


def delete_votes_before(cutoff: float) -> int:
    """Retention: drop votes created before cutoff."""
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM votes WHERE created_at < ?", (cutoff,))
        conn.commit()
        return cursor.rowcount


# --- Economy record -----------------------------------------------------------

def load_economy_config() -> EconomyConfig:
    """The stored economy record, or defaults when none has been saved."""
    with get_db() as conn:
        row = conn.execute("SELECT payload FROM economy_config WHERE id = 1").fetchone()
        if row is None:
            return EconomyConfig()
        return EconomyConfig.from_dict(json.loads(row["payload"]))


def save_economy_config(config: EconomyConfig, updated_by: str = "system"):
    with get_db() as conn:
        conn.execute(
            '''
            INSERT INTO economy_config (id, payload, updated_at, updated_by) VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET payload = excluded.payload,
                updated_at = excluded.updated_at, updated_by = excluded.updated_by
            ''',
            (json.dumps(config.to_dict()), time.time(), updated_by)
        )
        conn.commit()


def table_counts() -> Dict[str, int]:
    with get_db() as conn:
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ("accounts", "claims", "claim_cells", "votes")
        }
