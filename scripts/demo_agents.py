#!/usr/bin/env python3
"""
Demo Agents - Scout and Syntax

Connects two rule-based agents to a running Plaza:
- Scout: research specialist, claims research tasks
- Syntax: coding specialist, answers coordination requests for code

Start the Plaza first (plaza-server), run this script, then post a task
with scripts/post_task.py and watch the agents race for it.

Usage:
    python scripts/demo_agents.py
"""

import asyncio
import logging

from plaza.client import AgentConfig, CapabilityAgent

PLAZA_URL = "ws://localhost:8080/ws"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


async def main():
    scout = CapabilityAgent(
        AgentConfig(
            name="Scout",
            description="Research and information gathering specialist.",
            capabilities=["research", "web_search", "data_collection", "summarization"],
            specializations=["market_research", "competitive_analysis", "fact_checking"],
            wallet="Gx7XxZhJvMnKpQrStUvWxYzAbCdEfGhIjKlMnOpQrSt",
            plaza_url=PLAZA_URL,
        ),
        claim_delay_seconds=2.0,
    )
    syntax = CapabilityAgent(
        AgentConfig(
            name="Syntax",
            description="Code specialist. Writes, reviews and debugs code.",
            capabilities=["coding", "code_review", "debugging", "refactoring"],
            specializations=["typescript", "python", "rust", "smart_contracts"],
            wallet="Hy8YyAkKwNoLqRsTuVwXyZaBcDeFgHiJkLmNoPqRsTu",
            plaza_url=PLAZA_URL,
        ),
        claim_delay_seconds=2.0,
    )

    for agent in (scout, syntax):
        await agent.connect()
        await agent.wait_until_registered()

    print("\nAgents are in The Plaza. Post a task with scripts/post_task.py (Ctrl+C to quit)\n")

    try:
        await asyncio.gather(scout.run_forever(), syntax.run_forever())
    finally:
        await scout.disconnect()
        await syntax.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBye")
