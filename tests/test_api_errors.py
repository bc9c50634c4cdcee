import pytest

from app.services.gcp_client import GcpApiError
from app.services.github_client import GitHubApiError


@pytest.mark.parametrize(
    "error, expected",
    [
        (GcpApiError("denied", status=403), True),
        (GcpApiError("denied", status=400, reason="PERMISSION_DENIED"), True),
        (GcpApiError("The caller does not have permission", status=400), True),
        (GcpApiError("Billing account not found", status=404), False),
    ],
)
def test_gcp_permission_denied(error, expected):
    assert error.permission_denied is expected


def test_gcp_conflict_is_already_exists():
    assert GcpApiError("exists", status=409).already_exists
    assert not GcpApiError("exists", status=400).already_exists


@pytest.mark.parametrize(
    "error, expected",
    [
        (GitHubApiError("Repository creation failed.: name already exists on this account", status=422), True),
        (GitHubApiError("Validation Failed: already_exists", status=422), True),
        (GitHubApiError("Validation Failed: missing_field", status=422), False),
        (GitHubApiError("Reference already exists", status=409), False),
    ],
)
def test_github_already_exists(error, expected):
    assert error.already_exists is expected
