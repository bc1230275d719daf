from datetime import datetime
from typing import Optional

import pydantic


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore")


class Owner(Model):
    login: str


class Repository(Model):
    id: Optional[int] = None
    name: Optional[str] = None
    full_name: Optional[str] = None
    owner: Optional[Owner] = None
    url: Optional[str] = None
    html_url: Optional[str] = None


class WorkflowRun(Model):
    id: int
    name: Optional[str] = None
    display_title: Optional[str] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    path: Optional[str] = None
    event: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    run_attempt: Optional[int] = None
    html_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"WorkflowRun({self.name!r}, {self.id}, {self.status}/{self.conclusion})"


class PrRef(Model):
    ref: Optional[str] = None
    sha: Optional[str] = None


class PullRequest(Model):
    id: Optional[int] = None
    number: int
    state: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    html_url: Optional[str] = None
    merged: Optional[bool] = None
    merged_at: Optional[datetime] = None
    merge_commit_sha: Optional[str] = None
    head: Optional[PrRef] = None
    base: Optional[PrRef] = None

    @property
    def is_merged(self) -> bool:
        return bool(self.merged) or self.merged_at is not None

    def __str__(self) -> str:
        return f"PR(#{self.number}, {self.state})"


class User(Model):
    login: Optional[str] = None


class Review(Model):
    state: Optional[str] = None
    user: Optional[User] = None


class WorkflowRunEvent(Model):
    action: Optional[str] = None
    workflow_run: WorkflowRun
    repository: Optional[Repository] = None


class PullRequestEvent(Model):
    action: Optional[str] = None
    pull_request: PullRequest
    repository: Optional[Repository] = None


class PullRequestReviewEvent(Model):
    action: Optional[str] = None
    review: Review
    pull_request: PullRequest
    repository: Optional[Repository] = None
