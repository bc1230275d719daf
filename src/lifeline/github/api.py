from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp
from aiolimiter import AsyncLimiter
from gidgethub import BadRequest, GitHubException, RateLimitExceeded
from gidgethub.abc import GitHubAPI
from sanic.log import logger

from lifeline.errors import RateLimited, UpstreamUnavailable
from lifeline.github.model import PullRequest, WorkflowRun
from lifeline.metric import record_api_call


RATE_LIMIT_STATUS_CODES = (403, 429)


class API:
    gh: GitHubAPI
    limiter: AsyncLimiter

    call_count: int

    def __init__(self, gh: GitHubAPI, limiter: Optional[AsyncLimiter] = None):
        self.gh = gh
        self.limiter = limiter or AsyncLimiter(60, 60)
        self.call_count = 0

    @asynccontextmanager
    async def _call(self, url: str):
        async with self.limiter:
            self.call_count += 1
            record_api_call(url)
            try:
                yield
            except RateLimitExceeded as e:
                reset = getattr(e.rate_limit, "reset_datetime", None)
                retry_after = 60.0
                if reset is not None:
                    retry_after = max(
                        1.0, (reset - datetime.now(timezone.utc)).total_seconds()
                    )
                raise RateLimited(str(e), retry_after=retry_after) from e
            except BadRequest as e:
                if e.status_code in RATE_LIMIT_STATUS_CODES:
                    raise RateLimited(str(e)) from e
                raise UpstreamUnavailable(f"{url}: {e}") from e
            except (GitHubException, aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise UpstreamUnavailable(f"{url}: {e!r}") from e

    async def get_workflow_run(self, owner: str, repo: str, run_id: int) -> WorkflowRun:
        url = f"/repos/{owner}/{repo}/actions/runs/{run_id}"
        logger.debug("Get workflow run %s", url)
        async with self._call(url):
            data = await self.gh.getitem(url)
        return WorkflowRun.model_validate(data)

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        branch: Optional[str] = None,
        per_page: int = 50,
    ) -> List[WorkflowRun]:
        url = f"/repos/{owner}/{repo}/actions/runs"
        url_vars = {"per_page": per_page}
        if branch is not None:
            url_vars["branch"] = branch
        logger.debug("List workflow runs %s (branch=%s)", url, branch)
        async with self._call(url):
            data = await self.gh.getitem(url + "{?branch,per_page}", url_vars=url_vars)
        return [WorkflowRun.model_validate(item) for item in data.get("workflow_runs", [])]

    async def find_pull_request(
        self, owner: str, repo: str, branch: str
    ) -> Optional[PullRequest]:
        url = f"/repos/{owner}/{repo}/pulls"
        logger.debug("Find pull request for %s:%s", repo, branch)
        async with self._call(url):
            data = await self.gh.getitem(
                url + "{?head,state}",
                url_vars={"head": f"{owner}:{branch}", "state": "all"},
            )
        if not data:
            return None
        return PullRequest.model_validate(data[0])

    async def get_pull(self, owner: str, repo: str, number: int) -> PullRequest:
        url = f"/repos/{owner}/{repo}/pulls/{number}"
        logger.debug("Get pull %s", url)
        async with self._call(url):
            data = await self.gh.getitem(url)
        return PullRequest.model_validate(data)
