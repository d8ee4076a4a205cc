"""Named GitHub methods served by the daemon.

Each method turns its parameters into one or more ClientRequests and sends
them through the coordinator, so convenience calls are cached, coalesced and
budgeted exactly like raw graphql/rest calls.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ghrelay.core.coordinator import RequestCoordinator
from ghrelay.core.errors import InvalidParams, PermanentError
from ghrelay.core.models import ClientRequest

USER_QUERY = """
query {
  viewer {
    login name email avatarUrl bio company location websiteUrl twitterUsername
    repositories { totalCount }
    followers { totalCount }
    following { totalCount }
    createdAt
  }
}
"""

# Fallback when the token lacks the user:email / read:user scope.
USER_QUERY_NO_EMAIL = USER_QUERY.replace(" email ", " ")

REPOS_QUERY = """
query($first: Int!) {
  viewer {
    repositories(first: $first, orderBy: {field: UPDATED_AT, direction: DESC}) {
      nodes {
        name nameWithOwner description url isPrivate isFork
        stargazerCount forkCount primaryLanguage { name } updatedAt pushedAt
      }
    }
  }
}
"""

ISSUES_QUERY = """
query($owner: String!, $name: String!, $first: Int!, $states: [IssueState!]) {
  repository(owner: $owner, name: $name) {
    issues(first: $first, states: $states, orderBy: {field: UPDATED_AT, direction: DESC}) {
      nodes {
        number title state url createdAt updatedAt
        author { login }
        labels(first: 10) { nodes { name } }
        comments { totalCount }
      }
    }
  }
}
"""

_PR_FIELDS = """
        number title state url isDraft mergeable createdAt updatedAt
        author { login }
        headRefName baseRefName additions deletions changedFiles
        commits { totalCount }
        comments { totalCount }
        reviews(first: %d) { nodes { author { login } state submittedAt } }
"""

PRS_QUERY = """
query($owner: String!, $name: String!, $first: Int!, $states: [PullRequestState!]) {
  repository(owner: $owner, name: $name) {
    pullRequests(first: $first, states: $states, orderBy: {field: UPDATED_AT, direction: DESC}) {
      nodes {%s}
    }
  }
}
""" % (_PR_FIELDS % 5)

PR_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {%s}
  }
}
""" % (_PR_FIELDS % 10)

REPO_ID_QUERY = """
query($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) { id }
}
"""

CREATE_ISSUE_MUTATION = """
mutation($repositoryId: ID!, $title: String!, $body: String) {
  createIssue(input: {repositoryId: $repositoryId, title: $title, body: $body}) {
    issue { number title state url createdAt updatedAt author { login } }
  }
}
"""

ISSUE_STATES = {
    "open": ["OPEN"],
    "closed": ["CLOSED"],
    "all": ["OPEN", "CLOSED"],
}

PR_STATES = {
    "open": ["OPEN"],
    "closed": ["CLOSED"],
    "merged": ["MERGED"],
    "all": ["OPEN", "CLOSED", "MERGED"],
}


# ============================================================================
# Parameter helpers
# ============================================================================

def _get_str(params: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = params.get(key, default)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParams(f"Parameter '{key}' must be a string")
    return value


def _require_str(params: Dict[str, Any], key: str) -> str:
    value = _get_str(params, key)
    if not value:
        raise InvalidParams(f"Missing required parameter: {key}")
    return value


def _get_int(params: Dict[str, Any], key: str, default: int) -> int:
    value = params.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParams(f"Parameter '{key}' must be an integer")
    return value


def parse_repo(repo: str) -> Tuple[str, str]:
    """Parse owner/repo from "owner/repo" format."""
    parts = repo.split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidParams(f"Invalid repo format. Expected 'owner/repo', got: {repo}")
    return parts[0], parts[1]


def _data(body: Any) -> Dict[str, Any]:
    return (body or {}).get("data") or {}


def _login(node: Optional[Dict[str, Any]]) -> Optional[str]:
    return (node or {}).get("login")


def _count(node: Optional[Dict[str, Any]]) -> int:
    return (node or {}).get("totalCount", 0)


def _shape_issue(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "number": node.get("number"),
        "title": node.get("title"),
        "state": node.get("state"),
        "url": node.get("url"),
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
        "author": _login(node.get("author")),
        "labels": [label["name"] for label in (node.get("labels") or {}).get("nodes", [])],
        "comment_count": _count(node.get("comments")),
    }


def _shape_pr(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "number": node.get("number"),
        "title": node.get("title"),
        "state": node.get("state"),
        "url": node.get("url"),
        "is_draft": node.get("isDraft"),
        "mergeable": node.get("mergeable"),
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
        "author": _login(node.get("author")),
        "head_branch": node.get("headRefName"),
        "base_branch": node.get("baseRefName"),
        "additions": node.get("additions"),
        "deletions": node.get("deletions"),
        "changed_files": node.get("changedFiles"),
        "commit_count": _count(node.get("commits")),
        "comment_count": _count(node.get("comments")),
        "reviews": [
            {
                "author": _login(r.get("author")),
                "state": r.get("state"),
                "submitted_at": r.get("submittedAt"),
            }
            for r in (node.get("reviews") or {}).get("nodes", [])
        ],
    }


# ============================================================================
# Methods
# ============================================================================

async def get_user(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        result = await coordinator.handle(ClientRequest.graphql(USER_QUERY))
    except PermanentError as e:
        if "user:email" not in e.message and "read:user" not in e.message:
            raise
        result = await coordinator.handle(ClientRequest.graphql(USER_QUERY_NO_EMAIL))

    v = _data(result.body).get("viewer") or {}
    return {
        "login": v.get("login"),
        "name": v.get("name"),
        "email": v.get("email"),
        "avatar_url": v.get("avatarUrl"),
        "bio": v.get("bio"),
        "company": v.get("company"),
        "location": v.get("location"),
        "website_url": v.get("websiteUrl"),
        "twitter_username": v.get("twitterUsername"),
        "public_repos": _count(v.get("repositories")),
        "followers": _count(v.get("followers")),
        "following": _count(v.get("following")),
        "created_at": v.get("createdAt"),
    }


async def list_repos(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    limit = _get_int(params, "limit", 10)
    result = await coordinator.handle(ClientRequest.graphql(REPOS_QUERY, {"first": limit}))
    nodes = ((_data(result.body).get("viewer") or {}).get("repositories") or {}).get("nodes", [])
    repos = [
        {
            "name": n.get("name"),
            "full_name": n.get("nameWithOwner"),
            "description": n.get("description"),
            "url": n.get("url"),
            "is_private": n.get("isPrivate"),
            "is_fork": n.get("isFork"),
            "stars": n.get("stargazerCount"),
            "forks": n.get("forkCount"),
            "language": (n.get("primaryLanguage") or {}).get("name"),
            "updated_at": n.get("updatedAt"),
            "pushed_at": n.get("pushedAt"),
        }
        for n in nodes
    ]
    return {"repos": repos, "count": len(repos)}


async def list_issues(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    repo = _require_str(params, "repo")
    owner, name = parse_repo(repo)
    state = (_get_str(params, "state", "open") or "open").lower()
    limit = _get_int(params, "limit", 10)

    variables = {
        "owner": owner,
        "name": name,
        "first": limit,
        "states": ISSUE_STATES.get(state, ISSUE_STATES["open"]),
    }
    result = await coordinator.handle(ClientRequest.graphql(ISSUES_QUERY, variables))
    nodes = ((_data(result.body).get("repository") or {}).get("issues") or {}).get("nodes", [])
    issues = [_shape_issue(n) for n in nodes]
    return {"repo": repo, "state": state, "issues": issues, "count": len(issues)}


async def list_prs(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    repo = _require_str(params, "repo")
    owner, name = parse_repo(repo)
    state = (_get_str(params, "state", "open") or "open").lower()
    limit = _get_int(params, "limit", 10)

    variables = {
        "owner": owner,
        "name": name,
        "first": limit,
        "states": PR_STATES.get(state, PR_STATES["open"]),
    }
    result = await coordinator.handle(ClientRequest.graphql(PRS_QUERY, variables))
    nodes = ((_data(result.body).get("repository") or {}).get("pullRequests") or {}).get("nodes", [])
    prs = [_shape_pr(n) for n in nodes]
    return {"repo": repo, "state": state, "prs": prs, "count": len(prs)}


async def get_pr(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    owner, name = parse_repo(_require_str(params, "repo"))
    number = _get_int(params, "number", 0)
    if number <= 0:
        raise InvalidParams("Missing required parameter: number")

    variables = {"owner": owner, "name": name, "number": number}
    result = await coordinator.handle(ClientRequest.graphql(PR_QUERY, variables))
    node = (_data(result.body).get("repository") or {}).get("pullRequest")
    if node is None:
        raise PermanentError(f"Pull request {owner}/{name}#{number} not found", status=404)
    return _shape_pr(node)


async def get_notifications(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    result = await coordinator.handle(ClientRequest.rest("GET", "/notifications"))
    notifications = [
        {
            "id": n.get("id"),
            "unread": n.get("unread"),
            "reason": n.get("reason"),
            "subject_title": (n.get("subject") or {}).get("title"),
            "subject_type": (n.get("subject") or {}).get("type"),
            "subject_url": (n.get("subject") or {}).get("url"),
            "repo_full_name": (n.get("repository") or {}).get("full_name"),
            "updated_at": n.get("updated_at"),
        }
        for n in (result.body or [])
    ]
    return {
        "notifications": notifications,
        "unread_count": sum(1 for n in notifications if n["unread"]),
    }


async def create_issue(coordinator: RequestCoordinator, params: Dict[str, Any]) -> Dict[str, Any]:
    repo = _require_str(params, "repo")
    owner, name = parse_repo(repo)
    title = _require_str(params, "title")
    body = _get_str(params, "body")

    # The repository node ID is needed for the mutation.
    lookup = await coordinator.handle(
        ClientRequest.graphql(REPO_ID_QUERY, {"owner": owner, "name": name})
    )
    repo_id = (_data(lookup.body).get("repository") or {}).get("id")
    if not repo_id:
        raise PermanentError(f"Repository {repo} not found", status=404)

    result = await coordinator.handle(
        ClientRequest.graphql(
            CREATE_ISSUE_MUTATION,
            {"repositoryId": repo_id, "title": title, "body": body},
            idempotency_key=params.get("idempotency_key"),
            resource=f"repos/{owner}/{name}",
        )
    )
    issue = (_data(result.body).get("createIssue") or {}).get("issue") or {}
    shaped = _shape_issue(issue)
    return {"created": True, "issue": shaped}


# ============================================================================
# Catalog
# ============================================================================

MethodHandler = Callable[[RequestCoordinator, Dict[str, Any]], Awaitable[Any]]


@dataclass
class MethodInfo:
    name: str
    description: str
    handler: MethodHandler
    params: List[Dict[str, Any]] = field(default_factory=list)

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "params": self.params}


def _param(name: str, param_type: str, required: bool = False, default: Any = None) -> Dict[str, Any]:
    return {"name": name, "type": param_type, "required": required, "default": default}


METHODS: Dict[str, MethodInfo] = {
    info.name: info
    for info in [
        MethodInfo("github.user", "Get current authenticated user", get_user),
        MethodInfo(
            "github.repos",
            "List your repositories",
            list_repos,
            [_param("limit", "integer", default=10)],
        ),
        MethodInfo(
            "github.issues",
            "List issues for a repository",
            list_issues,
            [
                _param("repo", "string", required=True),
                _param("state", "string", default="open"),
                _param("limit", "integer", default=10),
            ],
        ),
        MethodInfo(
            "github.prs",
            "List pull requests for a repository",
            list_prs,
            [
                _param("repo", "string", required=True),
                _param("state", "string", default="open"),
                _param("limit", "integer", default=10),
            ],
        ),
        MethodInfo(
            "github.pr",
            "Get pull request details with reviews",
            get_pr,
            [_param("repo", "string", required=True), _param("number", "integer", required=True)],
        ),
        MethodInfo("github.notifications", "Get unread notifications", get_notifications),
        MethodInfo(
            "github.create_issue",
            "Create a new issue",
            create_issue,
            [
                _param("repo", "string", required=True),
                _param("title", "string", required=True),
                _param("body", "string"),
            ],
        ),
    ]
}


def lookup_method(name: str) -> Optional[MethodInfo]:
    """Find a method by full name or short alias ("issues" -> "github.issues")."""
    if name in METHODS:
        return METHODS[name]
    return METHODS.get(f"github.{name}")


def method_list() -> List[Dict[str, Any]]:
    return [info.describe() for info in METHODS.values()]
