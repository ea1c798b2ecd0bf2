"""
Entity stores for the stale sweeper.

An entity store is the sweeper's only view of a hosting platform. It lists the
open issues and pull/merge requests of one project as TrackableEntity objects
and performs the mutations the sweeper requests:

- list_entities()
- add_label(entity, label)
- remove_label(entity, label)
- post_comment(entity, body)
- close(entity)
- delete_branch(entity, branch)

Every store translates its platform's exceptions into the PlatformError
hierarchy defined here, so the sweeper can retry, skip or report without
knowing which platform it is talking to.

Supported platforms:
- GitHub (via PyGithub)
- GitLab (via python-gitlab)
- In-memory (for tests and local experiments)
"""

import dataclasses
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

import gitlab
import requests
from github import (
    BadCredentialsException,
    GithubException,
    RateLimitExceededException,
    UnknownObjectException,
)

logger = logging.getLogger(__name__)


ISSUE = 'issue'
PULL_REQUEST = 'pull_request'
ENTITY_KINDS = (ISSUE, PULL_REQUEST)


class PlatformError(Exception):
    """Base class for errors raised by an entity store."""


class TransientPlatformError(PlatformError):
    """Rate limit, server or network failure that may succeed when retried."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PlatformPermissionError(PlatformError):
    """The token is not allowed to perform the requested operation."""


class EntityNotFoundError(PlatformError):
    """The entity (or branch) no longer exists on the platform."""


@dataclass(frozen=True)
class TrackableEntity:
    """An open issue or pull request as seen by the sweeper."""

    number: int
    kind: str
    last_activity_at: datetime
    title: str = ''
    labels: frozenset = frozenset()
    has_stale_label: bool = False
    has_stale_comment: bool = False
    stale_marked_at: Optional[datetime] = None
    associated_branch: Optional[str] = None
    closed: bool = False
    draft: bool = False
    web_url: str = ''

    @property
    def key(self) -> str:
        # GitLab issue and merge request numbers overlap, so the kind is part of the key
        return f"{self.kind}#{self.number}"

    @property
    def is_pull_request(self) -> bool:
        return self.kind == PULL_REQUEST

    def describe(self) -> str:
        prefix = 'PR' if self.is_pull_request else 'issue'
        return f"{prefix} #{self.number}"


def _record_listing_error(store, entity_key: str, title: str, error: PlatformError) -> None:
    if isinstance(error, EntityNotFoundError):
        logger.info(f"{entity_key} disappeared from {store.project_name} while listing, skipping it")
        return
    logger.error(f"Could not read {entity_key} in {store.project_name}, skipping it: {error}")
    store.listing_errors.append({
        'entity_key': entity_key,
        'title': title or '',
        'errors': [str(error)],
    })


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes returned by older client versions as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(date_str: str) -> datetime:
    """
    Parse a timestamp string into a timezone-aware datetime.

    Handles the ISO 8601 variants that GitLab returns.

    Args:
        date_str: Date string in ISO 8601 format

    Returns:
        datetime object with timezone info

    Raises:
        ValueError: If the date cannot be parsed
    """
    # Handle 'Z' suffix (UTC)
    if date_str.endswith('Z'):
        date_str = date_str[:-1] + '+00:00'

    try:
        return ensure_utc(datetime.fromisoformat(date_str))
    except ValueError:
        formats = [
            '%Y-%m-%dT%H:%M:%S%z',
            '%Y-%m-%dT%H:%M:%S.%f%z',
            '%Y-%m-%d %H:%M:%S%z',
        ]
        for fmt in formats:
            try:
                return datetime.strptime(date_str, fmt)
            except ValueError:
                continue
        raise ValueError(f"Unable to parse date: {date_str}")


# =============================================================================
# GitHub
# =============================================================================


def _github_error_message(e: GithubException) -> str:
    data = getattr(e, 'data', None)
    if isinstance(data, dict) and data.get('message'):
        return str(data['message'])
    return str(e)


def _github_retry_after(e: GithubException) -> Optional[float]:
    headers = getattr(e, 'headers', None) or {}
    headers = {str(k).lower(): v for k, v in headers.items()}
    if 'retry-after' in headers:
        try:
            return float(headers['retry-after'])
        except (TypeError, ValueError):
            return None
    if 'x-ratelimit-reset' in headers:
        try:
            reset_at = float(headers['x-ratelimit-reset'])
        except (TypeError, ValueError):
            return None
        return max(reset_at - datetime.now(timezone.utc).timestamp(), 0.0)
    return None


def translate_github_error(e: GithubException, description: str) -> PlatformError:
    """Map a PyGithub exception onto the PlatformError hierarchy."""
    message = f"GitHub error while trying to {description}: {_github_error_message(e)}"
    status = getattr(e, 'status', None)

    if isinstance(e, RateLimitExceededException):
        return TransientPlatformError(message, retry_after=_github_retry_after(e))
    if isinstance(e, UnknownObjectException) or status == 404:
        return EntityNotFoundError(message)
    if status == 422 and 'does not exist' in _github_error_message(e).lower():
        # Deleting a ref that is already gone
        return EntityNotFoundError(message)
    if status == 403 and 'rate limit' in _github_error_message(e).lower():
        # Secondary rate limits are reported as 403
        return TransientPlatformError(message, retry_after=_github_retry_after(e))
    if isinstance(e, BadCredentialsException) or status in (401, 403):
        return PlatformPermissionError(message)
    if status is None or status == 429 or status >= 500:
        return TransientPlatformError(message, retry_after=_github_retry_after(e))
    return PlatformError(message)


@contextmanager
def github_errors(description: str):
    """Translate PyGithub and network exceptions raised inside the block."""
    try:
        yield
    except GithubException as e:
        raise translate_github_error(e, description) from e
    except requests.exceptions.RequestException as e:
        raise TransientPlatformError(
            f"Network error while trying to {description}: {e}"
        ) from e


class GitHubEntityStore:
    """Entity store backed by a GitHub repository."""

    def __init__(
        self,
        gh,
        repo_name: str,
        stale_label: str = 'Stale',
        stale_comment_bodies: Iterable[str] = (),
    ):
        self.gh = gh
        self.repo_name = repo_name
        self.project_name = repo_name
        self.stale_label = stale_label
        self.stale_comment_bodies = {body.strip() for body in stale_comment_bodies}
        self.listing_errors = []
        self._repo = None
        self._repo_lock = threading.Lock()

    def _get_repo(self):
        with self._repo_lock:
            if self._repo is None:
                with github_errors(f"fetch repository {self.repo_name}"):
                    self._repo = self.gh.get_repo(self.repo_name)
            return self._repo

    def _get_issue(self, entity: TrackableEntity):
        # Pull requests are issues too; labels, comments and state go through the issues API
        repo = self._get_repo()
        with github_errors(f"fetch {entity.describe()} in {self.repo_name}"):
            return repo.get_issue(entity.number)

    def _get_stale_marked_at(self, issue) -> Optional[datetime]:
        marked_at = None
        for event in issue.get_events():
            if event.event != 'labeled' or event.label is None:
                continue
            if event.label.name == self.stale_label:
                event_date = ensure_utc(event.created_at)
                if marked_at is None or event_date > marked_at:
                    marked_at = event_date
        return marked_at

    def _has_stale_comment(self, issue, since: Optional[datetime]) -> bool:
        if since is None or not self.stale_comment_bodies:
            return False
        for comment in issue.get_comments(since=since):
            if (comment.body or '').strip() in self.stale_comment_bodies:
                return True
        return False

    def _build_entity(self, repo, issue) -> TrackableEntity:
        labels = frozenset(label.name for label in issue.labels)
        has_stale_label = self.stale_label in labels
        stale_marked_at = None
        has_stale_comment = False
        if has_stale_label:
            stale_marked_at = self._get_stale_marked_at(issue)
            has_stale_comment = self._has_stale_comment(issue, stale_marked_at)

        kind = ISSUE
        branch = None
        draft = False
        if issue.pull_request is not None:
            kind = PULL_REQUEST
            pr = repo.get_pull(issue.number)
            draft = bool(getattr(pr, 'draft', False))
            head_repo = pr.head.repo if pr.head else None
            # Branches of forks cannot be deleted from here
            if head_repo is not None and head_repo.full_name == repo.full_name:
                branch = pr.head.ref

        return TrackableEntity(
            number=issue.number,
            kind=kind,
            title=issue.title,
            last_activity_at=ensure_utc(issue.updated_at),
            labels=labels,
            has_stale_label=has_stale_label,
            has_stale_comment=has_stale_comment,
            stale_marked_at=stale_marked_at,
            associated_branch=branch,
            closed=issue.state == 'closed',
            draft=draft,
            web_url=issue.html_url,
        )

    def list_entities(self) -> List[TrackableEntity]:
        """
        List all open issues and pull requests of the repository.

        Entities whose details cannot be read are left out and recorded in
        `listing_errors`; entities deleted while listing are left out silently.
        """
        repo = self._get_repo()
        entities = []
        self.listing_errors = []
        with github_errors(f"list issues of {self.repo_name}"):
            for issue in repo.get_issues(state='open'):
                kind = PULL_REQUEST if issue.pull_request is not None else ISSUE
                key = f"{kind}#{issue.number}"
                try:
                    with github_errors(f"read {key} in {self.repo_name}"):
                        entity = self._build_entity(repo, issue)
                except PlatformError as e:
                    _record_listing_error(self, key, issue.title, e)
                    continue
                entities.append(entity)
        logger.debug(f"Listed {len(entities)} open issues/PRs in {self.repo_name}")
        return entities

    def add_label(self, entity: TrackableEntity, label: str) -> None:
        issue = self._get_issue(entity)
        with github_errors(f"add label '{label}' to {entity.describe()}"):
            issue.add_to_labels(label)

    def remove_label(self, entity: TrackableEntity, label: str) -> None:
        issue = self._get_issue(entity)
        if label not in {existing.name for existing in issue.labels}:
            return
        with github_errors(f"remove label '{label}' from {entity.describe()}"):
            issue.remove_from_labels(label)

    def post_comment(self, entity: TrackableEntity, body: str) -> None:
        issue = self._get_issue(entity)
        with github_errors(f"comment on {entity.describe()}"):
            issue.create_comment(body)

    def close(self, entity: TrackableEntity) -> None:
        issue = self._get_issue(entity)
        with github_errors(f"close {entity.describe()}"):
            issue.edit(state='closed')

    def delete_branch(self, entity: TrackableEntity, branch: str) -> None:
        repo = self._get_repo()
        with github_errors(f"delete branch '{branch}' of {entity.describe()}"):
            ref = repo.get_git_ref(f"heads/{branch}")
            ref.delete()


# =============================================================================
# GitLab
# =============================================================================


def translate_gitlab_error(e: gitlab.exceptions.GitlabError, description: str) -> PlatformError:
    """Map a python-gitlab exception onto the PlatformError hierarchy."""
    message = f"GitLab error while trying to {description}: {e.error_message}"
    code = getattr(e, 'response_code', None)

    if isinstance(e, gitlab.exceptions.GitlabAuthenticationError) or code in (401, 403):
        return PlatformPermissionError(message)
    if code == 404:
        return EntityNotFoundError(message)
    if code is None or code == 429 or code >= 500:
        return TransientPlatformError(message)
    return PlatformError(message)


@contextmanager
def gitlab_errors(description: str):
    """Translate python-gitlab and network exceptions raised inside the block."""
    try:
        yield
    except gitlab.exceptions.GitlabError as e:
        raise translate_gitlab_error(e, description) from e
    except requests.exceptions.RequestException as e:
        raise TransientPlatformError(
            f"Network error while trying to {description}: {e}"
        ) from e


class GitLabEntityStore:
    """Entity store backed by a GitLab project (issues and merge requests)."""

    def __init__(
        self,
        gl: gitlab.Gitlab,
        project_id,
        stale_label: str = 'Stale',
        stale_comment_bodies: Iterable[str] = (),
    ):
        self.gl = gl
        self.project_id = project_id
        self.project_name = str(project_id)
        self.stale_label = stale_label
        self.stale_comment_bodies = {body.strip() for body in stale_comment_bodies}
        self.listing_errors = []
        self._project = None
        self._project_lock = threading.Lock()

    def _get_project(self):
        with self._project_lock:
            if self._project is None:
                with gitlab_errors(f"fetch project {self.project_id}"):
                    self._project = self.gl.projects.get(self.project_id)
                self.project_name = getattr(
                    self._project, 'path_with_namespace', str(self.project_id)
                )
            return self._project

    def _get_item(self, entity: TrackableEntity):
        project = self._get_project()
        with gitlab_errors(f"fetch {entity.describe()} in {self.project_name}"):
            if entity.is_pull_request:
                return project.mergerequests.get(entity.number)
            return project.issues.get(entity.number)

    def _get_stale_marked_at(self, item) -> Optional[datetime]:
        marked_at = None
        for event in item.resourcelabelevents.list(iterator=True):
            label = getattr(event, 'label', None)
            if event.action != 'add' or not isinstance(label, dict):
                continue
            if label.get('name') == self.stale_label:
                try:
                    event_date = parse_timestamp(event.created_at)
                except (ValueError, TypeError):
                    continue
                if marked_at is None or event_date > marked_at:
                    marked_at = event_date
        return marked_at

    def _has_stale_comment(self, item, since: Optional[datetime]) -> bool:
        if since is None or not self.stale_comment_bodies:
            return False
        notes = item.notes.list(order_by='created_at', sort='desc', iterator=True)
        for note in notes:
            try:
                created_at = parse_timestamp(note.created_at)
            except (ValueError, TypeError):
                continue
            if created_at < since:
                break
            if (note.body or '').strip() in self.stale_comment_bodies:
                return True
        return False

    def _build_entity(self, project, item, kind: str) -> Optional[TrackableEntity]:
        try:
            last_activity = parse_timestamp(item.updated_at)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(
                f"Could not parse activity date for {kind} #{item.iid} "
                f"in {self.project_name}: {e}. Skipping."
            )
            return None

        labels = frozenset(getattr(item, 'labels', None) or [])
        has_stale_label = self.stale_label in labels
        stale_marked_at = None
        has_stale_comment = False
        if has_stale_label:
            stale_marked_at = self._get_stale_marked_at(item)
            has_stale_comment = self._has_stale_comment(item, stale_marked_at)

        branch = None
        draft = False
        if kind == PULL_REQUEST:
            draft = bool(getattr(item, 'draft', False) or getattr(item, 'work_in_progress', False))
            # Source branches of forks live in another project
            if getattr(item, 'source_project_id', project.id) == project.id:
                branch = item.source_branch

        return TrackableEntity(
            number=item.iid,
            kind=kind,
            title=item.title,
            last_activity_at=last_activity,
            labels=labels,
            has_stale_label=has_stale_label,
            has_stale_comment=has_stale_comment,
            stale_marked_at=stale_marked_at,
            associated_branch=branch,
            closed=item.state in ('closed', 'merged'),
            draft=draft,
            web_url=getattr(item, 'web_url', ''),
        )

    def _read_entity(self, project, item, kind: str) -> Optional[TrackableEntity]:
        key = f"{kind}#{item.iid}"
        try:
            with gitlab_errors(f"read {key} in {self.project_name}"):
                return self._build_entity(project, item, kind)
        except PlatformError as e:
            _record_listing_error(self, key, getattr(item, 'title', ''), e)
            return None

    def list_entities(self) -> List[TrackableEntity]:
        """
        List all open issues and merge requests of the project.

        Entities whose details cannot be read are left out and recorded in
        `listing_errors`; entities deleted while listing are left out silently.
        """
        project = self._get_project()
        entities = []
        self.listing_errors = []
        with gitlab_errors(f"list issues and merge requests of {self.project_name}"):
            for issue in project.issues.list(state='opened', iterator=True):
                entity = self._read_entity(project, issue, ISSUE)
                if entity is not None:
                    entities.append(entity)
            for mr in project.mergerequests.list(state='opened', iterator=True):
                entity = self._read_entity(project, mr, PULL_REQUEST)
                if entity is not None:
                    entities.append(entity)
        logger.debug(f"Listed {len(entities)} open issues/MRs in {self.project_name}")
        return entities

    def add_label(self, entity: TrackableEntity, label: str) -> None:
        item = self._get_item(entity)
        labels = list(getattr(item, 'labels', None) or [])
        if label in labels:
            return
        with gitlab_errors(f"add label '{label}' to {entity.describe()}"):
            item.labels = labels + [label]
            item.save()

    def remove_label(self, entity: TrackableEntity, label: str) -> None:
        item = self._get_item(entity)
        labels = list(getattr(item, 'labels', None) or [])
        if label not in labels:
            return
        with gitlab_errors(f"remove label '{label}' from {entity.describe()}"):
            item.labels = [existing for existing in labels if existing != label]
            item.save()

    def post_comment(self, entity: TrackableEntity, body: str) -> None:
        item = self._get_item(entity)
        with gitlab_errors(f"comment on {entity.describe()}"):
            item.notes.create({'body': body})

    def close(self, entity: TrackableEntity) -> None:
        item = self._get_item(entity)
        if item.state in ('closed', 'merged'):
            return
        with gitlab_errors(f"close {entity.describe()}"):
            item.state_event = 'close'
            item.save()

    def delete_branch(self, entity: TrackableEntity, branch: str) -> None:
        project = self._get_project()
        with gitlab_errors(f"delete branch '{branch}' of {entity.describe()}"):
            project.branches.delete(branch)


# =============================================================================
# In-memory
# =============================================================================


class InMemoryEntityStore:
    """
    Dict-backed entity store.

    Mutations update the stored entities the way a platform would, so a
    second sweep observes the markers left by the first. Every call is
    recorded in `calls` as an (operation, entity_key, argument) tuple.
    Failures can be queued per entity and operation with `fail()`.
    """

    def __init__(
        self,
        entities: Iterable[TrackableEntity] = (),
        project_name: str = 'in-memory',
        stale_label: str = 'Stale',
        stale_comment_bodies: Iterable[str] = (),
        branches: Optional[Iterable[str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.project_name = project_name
        self.stale_label = stale_label
        self.stale_comment_bodies = {body.strip() for body in stale_comment_bodies}
        self.entities = {entity.key: entity for entity in entities}
        if branches is None:
            branches = [e.associated_branch for e in self.entities.values() if e.associated_branch]
        self.branches = set(branches)
        self.comments = {key: [] for key in self.entities}
        self.calls = []
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.listing_errors = []
        self._failures = {}
        self._lock = threading.Lock()

    def fail(self, entity_key: str, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of `operation` on `entity_key`."""
        with self._lock:
            self._failures.setdefault((entity_key, operation), []).extend(errors)

    def _record(self, operation: str, entity_key: str, argument=None) -> TrackableEntity:
        with self._lock:
            self.calls.append((operation, entity_key, argument))
            queued = self._failures.get((entity_key, operation))
            if queued:
                raise queued.pop(0)
            if entity_key not in self.entities:
                raise EntityNotFoundError(f"{entity_key} not found in {self.project_name}")
            return self.entities[entity_key]

    def _update(self, entity_key: str, **changes) -> None:
        with self._lock:
            self.entities[entity_key] = dataclasses.replace(self.entities[entity_key], **changes)

    def list_entities(self) -> List[TrackableEntity]:
        """List open entities; errors queued for 'read_entity' skip that entity."""
        with self._lock:
            self.calls.append(('list_entities', None, None))
            queued = self._failures.get((None, 'list_entities'))
            if queued:
                raise queued.pop(0)
            self.listing_errors = []
            entities = []
            for entity in self.entities.values():
                if entity.closed:
                    continue
                queued = self._failures.get((entity.key, 'read_entity'))
                if queued:
                    _record_listing_error(self, entity.key, entity.title, queued.pop(0))
                    continue
                entities.append(entity)
            return entities

    def add_label(self, entity: TrackableEntity, label: str) -> None:
        current = self._record('add_label', entity.key, label)
        now = self.clock()
        changes = {'labels': current.labels | {label}, 'last_activity_at': now}
        if label == self.stale_label and not current.has_stale_label:
            changes.update(has_stale_label=True, stale_marked_at=now, has_stale_comment=False)
        self._update(entity.key, **changes)

    def remove_label(self, entity: TrackableEntity, label: str) -> None:
        current = self._record('remove_label', entity.key, label)
        changes = {'labels': current.labels - {label}}
        if label == self.stale_label:
            changes.update(has_stale_label=False, stale_marked_at=None, has_stale_comment=False)
        self._update(entity.key, **changes)

    def post_comment(self, entity: TrackableEntity, body: str) -> None:
        current = self._record('post_comment', entity.key, body)
        changes = {'last_activity_at': self.clock()}
        if current.has_stale_label and body.strip() in self.stale_comment_bodies:
            changes['has_stale_comment'] = True
        self._update(entity.key, **changes)
        with self._lock:
            self.comments.setdefault(entity.key, []).append(body)

    def close(self, entity: TrackableEntity) -> None:
        self._record('close', entity.key)
        self._update(entity.key, closed=True, last_activity_at=self.clock())

    def delete_branch(self, entity: TrackableEntity, branch: str) -> None:
        self._record('delete_branch', entity.key, branch)
        with self._lock:
            if branch not in self.branches:
                raise EntityNotFoundError(f"Branch '{branch}' not found in {self.project_name}")
            self.branches.discard(branch)
