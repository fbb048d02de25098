#!/usr/bin/env python3
"""
阻塞状态全量重算脚本

用于 cron/k8s CronJob 定时调用，修复传播失败或被截断后留下的陈旧阻塞状态。

功能：
1. 逐个团队调用 /api/v1/dependencies/recompute API 重算团队内所有 release
2. 可选：调用 /api/v1/dependencies/cycles 检测依赖环
3. 有重算失败时以非零状态码退出，便于告警

使用方式：
    # 直接运行
    python scripts/recompute_blocked.py --team-id platform

    # 多个团队
    python scripts/recompute_blocked.py --team-id platform --team-id payments

    # crontab 示例（每 15 分钟，团队列表来自 TEAM_IDS）
    */15 * * * * cd /app && python scripts/recompute_blocked.py >> /var/log/recompute_blocked.log 2>&1

环境变量：
    RELEASE_GRAPH_URL: 服务地址（默认 http://localhost:8000）
    TEAM_IDS: 默认团队 ID 列表，逗号分隔（可选）
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from typing import List

import httpx


# 配置
RELEASE_GRAPH_URL = os.environ.get("RELEASE_GRAPH_URL", "http://localhost:8000")
DEFAULT_TEAM_IDS = [t.strip() for t in os.environ.get("TEAM_IDS", "").split(",") if t.strip()]


def log(level: str, message: str, **kwargs):
    """简单日志输出"""
    timestamp = datetime.now(timezone.utc).isoformat()
    extra = " ".join(f"{k}={v}" for k, v in kwargs.items())
    print(f"[{timestamp}] [{level.upper()}] {message} {extra}".strip())


async def recompute(client: httpx.AsyncClient, team_id: str) -> dict:
    """调用全量重算 API"""
    response = await client.post(
        f"{RELEASE_GRAPH_URL}/api/v1/dependencies/recompute",
        headers={"X-Team-ID": team_id},
    )
    response.raise_for_status()
    return response.json()


async def detect_cycles(client: httpx.AsyncClient, team_id: str) -> dict:
    """调用环检测 API"""
    response = await client.get(
        f"{RELEASE_GRAPH_URL}/api/v1/dependencies/cycles",
        headers={"X-Team-ID": team_id},
    )
    response.raise_for_status()
    return response.json()


async def run_team(client: httpx.AsyncClient, team_id: str, check_cycles: bool) -> bool:
    """重算单个团队，返回是否全部成功"""
    try:
        result = await recompute(client, team_id)
    except httpx.HTTPStatusError as e:
        log("error", "http_error",
            team_id=team_id,
            status=e.response.status_code,
            detail=e.response.text[:200],
        )
        return False

    log("info", "recompute_complete",
        team_id=team_id,
        outcome=result["outcome"],
        total=result["total"],
        changed=len(result["changed"]),
        failed=len(result["failures"]),
    )

    for failure in result["failures"]:
        log("warning", f"  - {failure['release_id']}: {failure['error_type']} {failure['message']}")

    if check_cycles:
        cycles = await detect_cycles(client, team_id)
        if cycles["has_cycles"]:
            for cycle in cycles["cycles"]:
                log("warning", "dependency_cycle", team_id=team_id, path=" -> ".join(cycle))

    return not result["failures"]


async def main():
    parser = argparse.ArgumentParser(description="阻塞状态全量重算脚本")
    parser.add_argument(
        "--team-id",
        dest="team_ids",
        action="append",
        help="团队 ID（可重复指定）",
    )
    parser.add_argument(
        "--check-cycles",
        action="store_true",
        help="重算后检测依赖环",
    )

    args = parser.parse_args()

    team_ids: List[str] = args.team_ids or DEFAULT_TEAM_IDS
    if not team_ids:
        parser.error("--team-id or TEAM_IDS is required")

    log("info", "recompute_start", teams=",".join(team_ids))

    ok = True
    try:
        async with httpx.AsyncClient(timeout=120.0) as client:
            for team_id in team_ids:
                ok = await run_team(client, team_id, args.check_cycles) and ok

    except httpx.HTTPStatusError as e:
        log("error", "http_error", status=e.response.status_code, detail=e.response.text[:200])
        return 1
    except httpx.RequestError as e:
        log("error", "request_error", error=str(e))
        return 1

    return 0 if ok else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
