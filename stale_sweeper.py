#!/usr/bin/env python3
"""
Stale Issue/Pull Request Sweeper

This script closes stale issues and pull requests (merge requests on GitLab)
of the configured projects. It is meant to be run once per day by a scheduler
(cron, a CI workflow, ...).

On every run, each open issue and pull request is classified:
- Fresh: recent activity, nothing to do
- Stale: inactive for `days_before_stale` days; the stale label is applied
  and a stale notice is posted
- Due for closure: carrying the stale label for `days_before_close` days;
  a closing comment is posted, the entity is closed and, for pull requests,
  the source branch is optionally deleted

The stale label is the only state kept between runs. Removing it (or the
platform removing it on new activity) returns an entity to Fresh.

Supported platforms:
- GitHub (via PyGithub)
- GitLab (via python-gitlab)
"""

import argparse
import functools
import logging
import os
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import gitlab
import yaml
from github import Github, GithubException
from jinja2 import Template

from entity_stores import (
    ISSUE,
    PULL_REQUEST,
    EntityNotFoundError,
    GitHubEntityStore,
    GitLabEntityStore,
    PlatformError,
    TrackableEntity,
    TransientPlatformError,
)


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


SUPPORTED_PLATFORMS = ('github', 'gitlab')
DEFAULT_PLATFORM = 'github'

# Default thresholds
DEFAULT_DAYS_BEFORE_STALE = 30
DEFAULT_DAYS_BEFORE_CLOSE = 5
DEFAULT_STALE_LABEL = 'Stale'
DEFAULT_DELETE_BRANCH = False

# Default configuration values for performance and resilience
DEFAULT_MAX_WORKERS = 4  # Number of concurrent threads for processing entities
DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
DEFAULT_RETRY_MAX_BACKOFF_SECONDS = 60.0

DEFAULT_DATABASE_PATH = "./sweep_history.db"

# Messages are Jinja2 templates rendered with days_before_stale,
# days_before_close and kind ("issue" or "PR")
DEFAULT_STALE_MESSAGE = (
    "This {{ kind }} is stale because it has been open {{ days_before_stale }} days "
    "with no activity. Remove stale label or comment or this will be closed in "
    "{{ days_before_close }} days."
)
DEFAULT_CLOSE_MESSAGE = (
    "This {{ kind }} has been closed due to inactivity. If you believe this {{ kind }} "
    "is still relevant, please feel free to reopen it with additional context or "
    "information."
)

LABEL_LIST_KEYS = (
    'any_of_issue_labels',
    'any_of_pr_labels',
    'exempt_issue_labels',
    'exempt_pr_labels',
)
MESSAGE_KEYS = (
    'stale_issue_message',
    'close_issue_message',
    'stale_pr_message',
    'close_pr_message',
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


# =============================================================================
# Sweep Model
# =============================================================================


@dataclass(frozen=True)
class SweepConfig:
    """Settings of one sweep run. Immutable for the duration of the run."""

    days_before_stale: int = DEFAULT_DAYS_BEFORE_STALE
    days_before_close: int = DEFAULT_DAYS_BEFORE_CLOSE
    required_any_of_labels: frozenset = frozenset()
    stale_message: str = DEFAULT_STALE_MESSAGE
    close_message: str = DEFAULT_CLOSE_MESSAGE
    delete_branch_on_close: bool = DEFAULT_DELETE_BRANCH
    apply_label_filter_to_prs: bool = False
    stale_label: str = DEFAULT_STALE_LABEL
    stale_pr_message: Optional[str] = None
    close_pr_message: Optional[str] = None
    any_of_pr_labels: frozenset = frozenset()
    exempt_issue_labels: frozenset = frozenset()
    exempt_pr_labels: frozenset = frozenset()
    exempt_draft_pr: bool = False
    close_issue_label: Optional[str] = None
    close_pr_label: Optional[str] = None

    def _render(self, template_text: str, kind: str) -> str:
        return render_message(
            template_text,
            days_before_stale=self.days_before_stale,
            days_before_close=self.days_before_close,
            kind='PR' if kind == PULL_REQUEST else 'issue',
        )

    def stale_message_for(self, kind: str) -> str:
        if kind == PULL_REQUEST and self.stale_pr_message:
            return self._render(self.stale_pr_message, kind)
        return self._render(self.stale_message, kind)

    def close_message_for(self, kind: str) -> str:
        if kind == PULL_REQUEST and self.close_pr_message:
            return self._render(self.close_pr_message, kind)
        return self._render(self.close_message, kind)

    def close_label_for(self, kind: str) -> Optional[str]:
        return self.close_pr_label if kind == PULL_REQUEST else self.close_issue_label

    def stale_comment_bodies(self) -> List[str]:
        """Rendered stale notices, used by stores to recognise an earlier notice."""
        return [self.stale_message_for(kind) for kind in (ISSUE, PULL_REQUEST)]


@dataclass(frozen=True)
class ApplyLabel:
    entity_key: str
    label: str


@dataclass(frozen=True)
class PostComment:
    entity_key: str
    body: str


@dataclass(frozen=True)
class Close:
    entity_key: str


@dataclass(frozen=True)
class DeleteBranch:
    entity_key: str
    branch: str


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient platform errors."""

    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    max_backoff_seconds: float = DEFAULT_RETRY_MAX_BACKOFF_SECONDS

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.backoff_seconds * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff_seconds)


@functools.lru_cache(maxsize=32)
def _compile_template(template_text: str) -> Template:
    return Template(template_text)


def render_message(template_text: str, **context) -> str:
    """
    Render a message as a Jinja2 template.

    Every message is rendered, so literal '{{', '{%' or '{#' in it must be
    escaped with Jinja2 syntax.
    """
    return _compile_template(template_text).render(**context)


# =============================================================================
# Classification
# =============================================================================


def is_eligible_for_stale(entity: TrackableEntity, config: SweepConfig) -> bool:
    """
    Check whether an unmarked entity may be marked stale.

    Issues must carry at least one of `required_any_of_labels` (an empty set
    means every issue qualifies). Pull requests are held to the same filter
    only when `apply_label_filter_to_prs` is set; otherwise they use
    `any_of_pr_labels`. Exempt labels and, optionally, draft pull requests
    are never marked.
    """
    if entity.is_pull_request:
        if entity.labels & config.exempt_pr_labels:
            return False
        if config.exempt_draft_pr and entity.draft:
            return False
        if config.apply_label_filter_to_prs:
            required = config.required_any_of_labels
        else:
            required = config.any_of_pr_labels
    else:
        if entity.labels & config.exempt_issue_labels:
            return False
        required = config.required_any_of_labels

    if required and not (entity.labels & required):
        return False
    return True


def evaluate_entity(
    entity: TrackableEntity,
    config: SweepConfig,
    now: datetime
) -> list:
    """
    Decide the actions for a single entity.

    At most one transition happens per run: an unmarked entity can only be
    marked, and only a marked entity can be closed. The close delay is
    measured from when the stale label was applied.

    Args:
        entity: The entity to evaluate
        config: Sweep configuration
        now: Reference time of the run

    Returns:
        List of actions, empty when the entity is fresh
    """
    if entity.closed:
        return []

    key = entity.key

    if not entity.has_stale_label:
        if not is_eligible_for_stale(entity, config):
            return []
        if now - entity.last_activity_at < timedelta(days=config.days_before_stale):
            return []
        return [
            ApplyLabel(key, config.stale_label),
            PostComment(key, config.stale_message_for(entity.kind)),
        ]

    if entity.stale_marked_at is None:
        logger.debug(
            f"{entity.describe()} carries '{config.stale_label}' but the time it was "
            f"applied is unknown. Not closing it this run."
        )
        return []

    if now - entity.stale_marked_at >= timedelta(days=config.days_before_close):
        actions = [PostComment(key, config.close_message_for(entity.kind))]
        close_label = config.close_label_for(entity.kind)
        if close_label:
            actions.append(ApplyLabel(key, close_label))
        actions.append(Close(key))
        if entity.is_pull_request and config.delete_branch_on_close and entity.associated_branch:
            actions.append(DeleteBranch(key, entity.associated_branch))
        return actions

    if not entity.has_stale_comment:
        # A previous run applied the label but never got to post the notice
        return [PostComment(key, config.stale_message_for(entity.kind))]

    return []


def sweep(entities, config: SweepConfig, now: datetime) -> list:
    """Classify every entity and return the flat list of resulting actions."""
    actions = []
    for entity in entities:
        actions.extend(evaluate_entity(entity, config, now))
    return actions


def classify_transition(actions: list) -> str:
    """Name the transition a batch of actions performs."""
    if any(isinstance(action, Close) for action in actions):
        return 'close'
    if any(isinstance(action, ApplyLabel) for action in actions):
        return 'stale'
    if actions:
        return 'notice'
    return 'fresh'


# =============================================================================
# Action Execution
# =============================================================================


def call_with_retry(func, *args, retry_policy: Optional[RetryPolicy] = None,
                    description: str = 'platform call'):
    """
    Call `func(*args)`, retrying on TransientPlatformError with backoff.

    Other PlatformErrors propagate immediately. After the last attempt the
    transient error propagates as well.
    """
    policy = retry_policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return func(*args)
        except TransientPlatformError as e:
            if attempt >= policy.max_attempts:
                logger.error(f"Giving up on {description} after {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt, e.retry_after)
            logger.warning(
                f"Transient error on {description}, retrying in {delay:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts}): {e}"
            )
            time.sleep(delay)
            attempt += 1


def describe_action(action, entity: TrackableEntity) -> str:
    """Human-readable description of an action, used in log lines."""
    target = entity.describe()
    if isinstance(action, ApplyLabel):
        return f"add label '{action.label}' to {target}"
    if isinstance(action, PostComment):
        return f"comment on {target}"
    if isinstance(action, Close):
        return f"close {target}"
    if isinstance(action, DeleteBranch):
        return f"delete branch '{action.branch}' of {target}"
    raise ValueError(f"Unknown action: {action!r}")


def _dispatch(store, entity: TrackableEntity, action) -> None:
    if isinstance(action, ApplyLabel):
        store.add_label(entity, action.label)
    elif isinstance(action, PostComment):
        store.post_comment(entity, action.body)
    elif isinstance(action, Close):
        store.close(entity)
    elif isinstance(action, DeleteBranch):
        store.delete_branch(entity, action.branch)
    else:
        raise ValueError(f"Unknown action: {action!r}")


def apply_entity_actions(
    store,
    entity: TrackableEntity,
    actions: list,
    dry_run: bool = False,
    retry_policy: Optional[RetryPolicy] = None
) -> dict:
    """
    Apply one entity's batch of actions in order.

    A failed close skips the branch deletion that follows it. An entity that
    disappeared mid-run ends its batch without counting as a failure. Any
    other failure is recorded and the rest of the batch still runs.

    Args:
        store: Entity store to act through
        entity: The entity the actions belong to
        actions: Actions returned by evaluate_entity
        dry_run: If True, only log what would be done
        retry_policy: Backoff settings for transient errors

    Returns:
        Dictionary with applied actions, errors and the missing flag
    """
    result = {
        'applied': [],
        'errors': [],
        'missing': False,
    }
    close_failed = False

    for action in actions:
        description = describe_action(action, entity)

        if isinstance(action, DeleteBranch) and close_failed:
            logger.warning(f"Not deleting branch '{action.branch}': closing {entity.describe()} failed")
            result['errors'].append(f"Skipped: {description} (close failed)")
            continue

        if dry_run:
            logger.info(f"[DRY RUN] Would {description} in {store.project_name}")
            result['applied'].append(action)
            continue

        try:
            call_with_retry(
                _dispatch, store, entity, action,
                retry_policy=retry_policy,
                description=description,
            )
        except EntityNotFoundError as e:
            if isinstance(action, DeleteBranch):
                logger.info(f"Branch '{action.branch}' of {entity.describe()} is already gone")
                continue
            logger.info(f"{entity.describe()} no longer exists, skipping remaining actions: {e}")
            result['missing'] = True
            break
        except PlatformError as e:
            logger.error(f"Failed to {description} in {store.project_name}: {e}")
            result['errors'].append(str(e))
            if isinstance(action, Close):
                close_failed = True
            continue

        result['applied'].append(action)
        logger.info(f"Did {description} in {store.project_name}")

    return result


def _process_entity(
    store,
    entity: TrackableEntity,
    config: SweepConfig,
    now: datetime,
    dry_run: bool = False,
    retry_policy: Optional[RetryPolicy] = None
) -> dict:
    """
    Evaluate and act on a single entity.

    This is a helper function designed to be run in parallel for many entities.
    """
    actions = evaluate_entity(entity, config, now)
    transition = classify_transition(actions)
    outcome = {
        'entity': entity,
        'transition': transition,
        'applied': [],
        'errors': [],
        'missing': False,
    }
    if actions:
        outcome.update(apply_entity_actions(
            store, entity, actions, dry_run=dry_run, retry_policy=retry_policy
        ))
    return outcome


def _empty_summary() -> dict:
    return {
        'entities_evaluated': 0,
        'entities_fresh': 0,
        'entities_staled': 0,
        'entities_closed': 0,
        'stale_notices_posted': 0,
        'branches_deleted': 0,
        'entities_failed': 0,
        'entities_missing': 0,
        'staled_items': [],
        'closed_items': [],
        'failed_items': [],
    }


def _item_info(project_name: str, entity: TrackableEntity) -> dict:
    return {
        'project': project_name,
        'entity_key': entity.key,
        'number': entity.number,
        'kind': entity.kind,
        'title': entity.title,
        'web_url': entity.web_url,
    }


def _merge_outcome(summary: dict, outcome: dict, project_name: str) -> None:
    entity = outcome['entity']
    summary['entities_evaluated'] += 1

    if outcome['missing']:
        summary['entities_missing'] += 1
        return

    if outcome['errors']:
        summary['entities_failed'] += 1
        item = _item_info(project_name, entity)
        item['transition'] = outcome['transition']
        item['errors'] = list(outcome['errors'])
        summary['failed_items'].append(item)
        return

    transition = outcome['transition']
    if transition == 'fresh':
        summary['entities_fresh'] += 1
    elif transition == 'stale':
        summary['entities_staled'] += 1
        summary['staled_items'].append(_item_info(project_name, entity))
    elif transition == 'notice':
        summary['stale_notices_posted'] += 1
    elif transition == 'close':
        summary['entities_closed'] += 1
        summary['closed_items'].append(_item_info(project_name, entity))

    if any(isinstance(action, DeleteBranch) for action in outcome['applied']):
        summary['branches_deleted'] += 1


def merge_summaries(target: dict, summary: dict) -> None:
    """Add the counts and items of `summary` into `target`."""
    for key, value in summary.items():
        if isinstance(value, list):
            target.setdefault(key, []).extend(value)
        elif isinstance(value, int):
            target[key] = target.get(key, 0) + value


def run_sweep(
    store,
    config: SweepConfig,
    now: Optional[datetime] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    dry_run: bool = False,
    retry_policy: Optional[RetryPolicy] = None
) -> dict:
    """
    Sweep every open entity of one store.

    Entities are independent: they are evaluated and acted on concurrently,
    and a failure on one never stops the others.

    Args:
        store: Entity store for one project
        config: Sweep configuration
        now: Reference time (defaults to the current UTC time)
        max_workers: Number of worker threads
        dry_run: If True, don't actually mutate anything
        retry_policy: Backoff settings for transient errors

    Returns:
        Summary of the run

    Raises:
        PlatformError: If the entities could not be listed
    """
    now = now or datetime.now(timezone.utc)
    summary = _empty_summary()

    entities = call_with_retry(
        store.list_entities,
        retry_policy=retry_policy,
        description=f"list entities of {store.project_name}",
    )
    logger.info(f"Evaluating {len(entities)} open issue(s)/PR(s) in {store.project_name}")

    # Entities the store could not read are failures of their own, not of the project
    for failure in getattr(store, 'listing_errors', []):
        summary['entities_evaluated'] += 1
        summary['entities_failed'] += 1
        item = dict(failure, project=store.project_name, transition='error')
        summary['failed_items'].append(item)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_entity = {
            executor.submit(
                _process_entity, store, entity, config, now, dry_run, retry_policy
            ): entity
            for entity in entities
        }

        for future in as_completed(future_to_entity):
            entity = future_to_entity[future]
            try:
                outcome = future.result()
            except Exception as e:
                logger.error(f"Error processing {entity.describe()} in {store.project_name}: {e}")
                outcome = {
                    'entity': entity,
                    'transition': 'error',
                    'applied': [],
                    'errors': [str(e)],
                    'missing': False,
                }
            _merge_outcome(summary, outcome, store.project_name)

    return summary


# =============================================================================
# Run History
# =============================================================================


def init_database(db_path: str) -> None:
    """
    Initialize the SQLite database for sweep run history.

    The history is for reporting only; the sweep itself never reads it.

    Args:
        db_path: Path to the SQLite database file
    """
    with sqlite3.connect(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sweep_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project TEXT NOT NULL,
                started_at DATETIME NOT NULL,
                finished_at DATETIME NOT NULL,
                entities_evaluated INTEGER NOT NULL,
                entities_staled INTEGER NOT NULL,
                entities_closed INTEGER NOT NULL,
                branches_deleted INTEGER NOT NULL,
                entities_failed INTEGER NOT NULL,
                entities_missing INTEGER NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sweep_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                entity_key TEXT NOT NULL,
                title TEXT,
                outcome TEXT NOT NULL,
                detail TEXT,
                FOREIGN KEY(run_id) REFERENCES sweep_runs(id)
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_sweep_runs_started
            ON sweep_runs(started_at)
        ''')

        conn.commit()


def record_sweep_run(
    db_path: str,
    project: str,
    summary: dict,
    started_at: datetime,
    finished_at: Optional[datetime] = None
) -> int:
    """
    Record the summary of one project's sweep.

    Args:
        db_path: Path to the SQLite database file
        project: Project name
        summary: Summary returned by run_sweep
        started_at: When the sweep of this project started
        finished_at: When it finished (defaults to now)

    Returns:
        ID of the recorded run
    """
    finished_at = finished_at or datetime.now(timezone.utc)

    with sqlite3.connect(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO sweep_runs (
                project, started_at, finished_at, entities_evaluated,
                entities_staled, entities_closed, branches_deleted,
                entities_failed, entities_missing
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            project,
            started_at.isoformat(),
            finished_at.isoformat(),
            summary.get('entities_evaluated', 0),
            summary.get('entities_staled', 0),
            summary.get('entities_closed', 0),
            summary.get('branches_deleted', 0),
            summary.get('entities_failed', 0),
            summary.get('entities_missing', 0),
        ))
        run_id = cursor.lastrowid

        rows = []
        for item in summary.get('staled_items', []):
            rows.append((run_id, item['entity_key'], item.get('title'), 'staled', None))
        for item in summary.get('closed_items', []):
            rows.append((run_id, item['entity_key'], item.get('title'), 'closed', None))
        for item in summary.get('failed_items', []):
            rows.append((
                run_id, item['entity_key'], item.get('title'), 'failed',
                '; '.join(item.get('errors', []))
            ))
        cursor.executemany('''
            INSERT INTO sweep_items (run_id, entity_key, title, outcome, detail)
            VALUES (?, ?, ?, ?, ?)
        ''', rows)

        conn.commit()

    return run_id


def get_recent_runs(db_path: str, limit: int = 10) -> list:
    """Return the most recent sweep runs, newest first."""
    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM sweep_runs
            ORDER BY started_at DESC, id DESC
            LIMIT ?
        ''', (limit,))
        return [dict(row) for row in cursor.fetchall()]


# =============================================================================
# Configuration
# =============================================================================


def get_validated_max_workers(config: dict) -> int:
    """
    Get and validate the max_workers configuration value.

    Ensures max_workers is a positive integer within a reasonable range (1-32).
    Invalid values are logged and replaced with the default.

    Args:
        config: Configuration dictionary

    Returns:
        Validated max_workers value (1-32)
    """
    raw_max_workers = config.get('max_workers', DEFAULT_MAX_WORKERS)

    try:
        max_workers = int(raw_max_workers)
    except (TypeError, ValueError):
        logger.warning(
            f"Invalid 'max_workers' value {raw_max_workers!r} in config; "
            f"falling back to default {DEFAULT_MAX_WORKERS}"
        )
        return DEFAULT_MAX_WORKERS

    # Clamp to a reasonable, safe range (1-32)
    if max_workers < 1 or max_workers > 32:
        clamped = min(max(max_workers, 1), 32)
        logger.warning(
            f"Configured 'max_workers' ({max_workers}) is out of allowed range 1-32; "
            f"using {clamped} instead"
        )
        return clamped

    return max_workers


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def as_label_set(value) -> frozenset:
    """Accept a list of labels or a comma-separated string."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(',')
    return frozenset(str(label).strip() for label in value if str(label).strip())


def validate_config(config: dict) -> None:
    """
    Validate that all required configuration keys are present and sane.

    Supports both GitHub and GitLab platforms based on the 'platform' key.
    When platform is 'github' (default), a token is read from the 'github'
    section or the GITHUB_TOKEN environment variable. When platform is
    'gitlab', the 'gitlab' section is required.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing or values are invalid
    """
    if not config:
        raise ConfigurationError("Configuration is empty")

    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    platform = config.get('platform', DEFAULT_PLATFORM)

    if platform not in SUPPORTED_PLATFORMS:
        raise ConfigurationError(
            f"Unsupported platform: '{platform}'. Must be 'github' or 'gitlab'."
        )

    for section in ('github', 'gitlab'):
        if config.get(section) is not None and not isinstance(config[section], dict):
            raise ConfigurationError(f"'{section}' must be a mapping")

    if platform == 'github':
        github_config = config.get('github') or {}
        if not github_config.get('token') and not os.environ.get('GITHUB_TOKEN'):
            raise ConfigurationError(
                "Missing GitHub token: set 'github.token' or the GITHUB_TOKEN environment variable"
            )
    else:
        if not config.get('gitlab'):
            raise ConfigurationError("Missing 'gitlab' section in configuration")
        for key in ('url', 'private_token'):
            if key not in config['gitlab']:
                raise ConfigurationError(f"Missing required GitLab config key: '{key}'")

    if not config.get('projects'):
        raise ConfigurationError("No projects configured. Add projects to the 'projects' list.")

    if not isinstance(config['projects'], list):
        raise ConfigurationError("'projects' must be a list")

    days_before_stale = config.get('days_before_stale', DEFAULT_DAYS_BEFORE_STALE)
    if not _is_int(days_before_stale) or days_before_stale < 0:
        raise ConfigurationError("'days_before_stale' must be a non-negative integer")

    days_before_close = config.get('days_before_close', DEFAULT_DAYS_BEFORE_CLOSE)
    if not _is_int(days_before_close) or days_before_close < 1:
        raise ConfigurationError("'days_before_close' must be a positive integer")

    for key in LABEL_LIST_KEYS:
        value = config.get(key)
        if value is not None and not isinstance(value, (list, str)):
            raise ConfigurationError(f"'{key}' must be a list of labels or a comma-separated string")

    for key in MESSAGE_KEYS:
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigurationError(f"'{key}' must be a string")

    stale_label = config.get('stale_label', DEFAULT_STALE_LABEL)
    if not isinstance(stale_label, str) or not stale_label.strip():
        raise ConfigurationError("'stale_label' must be a non-empty string")

    retry_attempts = config.get('retry_max_attempts', DEFAULT_RETRY_MAX_ATTEMPTS)
    if not _is_int(retry_attempts) or retry_attempts < 1:
        raise ConfigurationError("'retry_max_attempts' must be a positive integer")

    for key in ('retry_backoff_seconds', 'retry_max_backoff_seconds'):
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"'{key}' must be a non-negative number")


def load_config(config_path: str, projects: Optional[List[str]] = None) -> dict:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML file
        projects: If given, replaces the 'projects' list of the file

    Returns:
        Validated configuration dictionary
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    if projects:
        config = dict(config or {})
        config['projects'] = list(projects)
    validate_config(config)
    return config


def build_sweep_config(config: dict) -> SweepConfig:
    """Build the immutable SweepConfig from a validated configuration dict."""
    return SweepConfig(
        days_before_stale=config.get('days_before_stale', DEFAULT_DAYS_BEFORE_STALE),
        days_before_close=config.get('days_before_close', DEFAULT_DAYS_BEFORE_CLOSE),
        required_any_of_labels=as_label_set(config.get('any_of_issue_labels')),
        stale_message=config.get('stale_issue_message') or DEFAULT_STALE_MESSAGE,
        close_message=config.get('close_issue_message') or DEFAULT_CLOSE_MESSAGE,
        delete_branch_on_close=bool(config.get('delete_branch', DEFAULT_DELETE_BRANCH)),
        apply_label_filter_to_prs=bool(config.get('apply_label_filter_to_prs', False)),
        stale_label=config.get('stale_label', DEFAULT_STALE_LABEL),
        stale_pr_message=config.get('stale_pr_message') or None,
        close_pr_message=config.get('close_pr_message') or None,
        any_of_pr_labels=as_label_set(config.get('any_of_pr_labels')),
        exempt_issue_labels=as_label_set(config.get('exempt_issue_labels')),
        exempt_pr_labels=as_label_set(config.get('exempt_pr_labels')),
        exempt_draft_pr=bool(config.get('exempt_draft_pr', False)),
        close_issue_label=config.get('close_issue_label') or None,
        close_pr_label=config.get('close_pr_label') or None,
    )


def build_retry_policy(config: dict) -> RetryPolicy:
    """Build the retry policy from a validated configuration dict."""
    return RetryPolicy(
        max_attempts=config.get('retry_max_attempts', DEFAULT_RETRY_MAX_ATTEMPTS),
        backoff_seconds=float(config.get('retry_backoff_seconds', DEFAULT_RETRY_BACKOFF_SECONDS)),
        max_backoff_seconds=float(
            config.get('retry_max_backoff_seconds', DEFAULT_RETRY_MAX_BACKOFF_SECONDS)
        ),
    )


# =============================================================================
# Platform Clients
# =============================================================================


def create_gitlab_client(config: dict) -> gitlab.Gitlab:
    """Create and authenticate a GitLab client."""
    gl = gitlab.Gitlab(
        url=config['gitlab']['url'],
        private_token=config['gitlab']['private_token']
    )
    try:
        gl.auth()
    except gitlab.exceptions.GitlabError as e:
        raise ConfigurationError(f"Failed to authenticate with GitLab: {e}") from e
    return gl


def create_github_client(config: dict):
    """
    Create and authenticate a GitHub client.

    Args:
        config: Configuration dictionary with an optional 'github' section

    Returns:
        Authenticated PyGithub Github client

    Raises:
        ConfigurationError: If authentication fails
    """
    github_config = config.get('github') or {}
    token = github_config.get('token') or os.environ.get('GITHUB_TOKEN')
    api_url = github_config.get('api_url')
    try:
        if api_url:
            gh = Github(login_or_token=token, base_url=api_url)
        else:
            gh = Github(login_or_token=token)
        # Verify the token with a call that installation and Actions tokens may make
        gh.get_rate_limit()
    except GithubException as e:
        raise ConfigurationError(
            f"Failed to authenticate with GitHub: {e.data.get('message', str(e)) if hasattr(e, 'data') and e.data else str(e)}"
        ) from e
    return gh


def create_entity_store(platform: str, client, project, sweep_config: SweepConfig):
    """Create the entity store for one configured project."""
    if platform == 'github':
        return GitHubEntityStore(
            client, project,
            stale_label=sweep_config.stale_label,
            stale_comment_bodies=sweep_config.stale_comment_bodies(),
        )
    return GitLabEntityStore(
        client, project,
        stale_label=sweep_config.stale_label,
        stale_comment_bodies=sweep_config.stale_comment_bodies(),
    )


def sweep_projects(config: dict, dry_run: bool = False) -> dict:
    """
    Main function to sweep every configured project.

    Projects are swept one after another; within a project, entities are
    processed in parallel. A project that cannot be listed is logged and
    counted, and the remaining projects are still swept.

    Args:
        config: Configuration dictionary
        dry_run: If True, don't actually label/comment/close/delete

    Returns:
        Combined summary of all projects
    """
    platform = config.get('platform', DEFAULT_PLATFORM)
    if platform == 'github':
        client = create_github_client(config)
    else:
        client = create_gitlab_client(config)

    sweep_config = build_sweep_config(config)
    retry_policy = build_retry_policy(config)
    max_workers = get_validated_max_workers(config)
    db_path = config.get('database_path', DEFAULT_DATABASE_PATH)

    if not dry_run:
        init_database(db_path)

    combined = _empty_summary()
    combined['projects_swept'] = 0
    combined['projects_failed'] = 0
    combined['failed_projects'] = []

    for project in config.get('projects', []):
        store = create_entity_store(platform, client, project, sweep_config)
        started_at = datetime.now(timezone.utc)
        try:
            summary = run_sweep(
                store, sweep_config,
                now=started_at,
                max_workers=max_workers,
                dry_run=dry_run,
                retry_policy=retry_policy,
            )
        except PlatformError as e:
            logger.error(f"Could not sweep project {project}: {e}")
            combined['projects_failed'] += 1
            combined['failed_projects'].append({'project': str(project), 'error': str(e)})
            continue

        combined['projects_swept'] += 1
        merge_summaries(combined, summary)

        # Record history only when changes were actually made
        if not dry_run:
            try:
                record_sweep_run(db_path, store.project_name, summary, started_at)
            except sqlite3.Error as e:
                logger.error(f"Could not record sweep history for {store.project_name}: {e}")

    return combined


def log_summary(summary: dict, dry_run: bool = False) -> None:
    """Log the summary block printed at the end of every run."""
    logger.info("=" * 50)
    logger.info("Stale Issue/PR Sweep Summary" + (" [DRY RUN]" if dry_run else ""))
    logger.info("=" * 50)
    logger.info(f"Projects swept: {summary.get('projects_swept', 0)}")
    logger.info(f"Projects failed: {summary.get('projects_failed', 0)}")
    logger.info(f"Issues/PRs evaluated: {summary['entities_evaluated']}")
    logger.info(f"Marked stale: {summary['entities_staled']}")
    logger.info(f"Closed: {summary['entities_closed']}")
    logger.info(f"Branches deleted: {summary['branches_deleted']}")
    logger.info(f"Stale notices completed: {summary['stale_notices_posted']}")
    logger.info(f"Vanished during the run: {summary['entities_missing']}")
    logger.info(f"Failed: {summary['entities_failed']}")

    if summary['staled_items']:
        logger.info("Marked stale:")
        for item in summary['staled_items']:
            logger.info(f"  - {item['project']} {item['entity_key']}: {item['title']}")

    if summary['closed_items']:
        logger.info("Closed:")
        for item in summary['closed_items']:
            logger.info(f"  - {item['project']} {item['entity_key']}: {item['title']}")

    if summary['failed_items']:
        logger.warning("Failed items:")
        for item in summary['failed_items']:
            logger.warning(
                f"  - {item['project']} {item['entity_key']}: {'; '.join(item['errors'])}"
            )

    for failed in summary.get('failed_projects', []):
        logger.warning(f"  - project {failed['project']}: {failed['error']}")


def main() -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Mark inactive issues and pull/merge requests as stale, and close '
                    'them once they have stayed stale for the configured period. '
                    'Supports both GitHub and GitLab platforms.'
    )
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '-p', '--project',
        action='append',
        dest='projects',
        metavar='PROJECT',
        help='Project to sweep, replacing the configured list (repeatable)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log the labels, comments, closures and branch deletions without performing them'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config, projects=args.projects)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        summary = sweep_projects(config, dry_run=args.dry_run)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    log_summary(summary, dry_run=args.dry_run)

    if summary['projects_failed']:
        return 2
    return 0


if __name__ == '__main__':
    exit(main())
