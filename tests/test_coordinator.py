"""Tests for PlazaCoordinator message handling."""

import asyncio

import pytest

from plaza.protocol.envelope import (
    create_agent_message,
    create_coordination_request,
    create_heartbeat,
    create_register,
    create_subscribe,
    create_task_announce,
    create_task_claim,
    create_unsubscribe,
    create_work_update,
)
from plaza.registry import AgentStatus, TaskStatus


class TestRegister:
    """Agent registration flow."""

    @pytest.mark.asyncio
    async def test_register_confirms_then_sends_open_tasks(self, plaza):
        conn = await plaza.register("scout", capabilities=["research"])

        assert conn.types() == ["registered", "open_tasks"]
        assert conn.payloads("registered") == [{"agentId": "scout"}]
        assert conn.payloads("open_tasks") == [{"tasks": []}]

    @pytest.mark.asyncio
    async def test_agent_online_goes_to_others_only(self, plaza):
        first = await plaza.register("scout")
        second = await plaza.register("syntax", capabilities=["code_review"])

        online = first.payloads("agent_online")
        assert len(online) == 1
        assert online[0]["agent"]["id"] == "syntax"
        assert online[0]["agent"]["status"] == "available"
        assert online[0]["agent"]["capabilities"] == ["code_review"]
        assert second.of_type("agent_online") == []

    @pytest.mark.asyncio
    async def test_open_tasks_snapshot_excludes_claimed(self, plaza):
        poster = await plaza.connect()
        await plaza.announce(poster, "t1")
        await plaza.announce(poster, "t2")
        claimer = await plaza.register("scout")
        await plaza.send(claimer, create_task_claim("t1", "scout"))

        late = await plaza.register("syntax")

        tasks = late.payloads("open_tasks")[0]["tasks"]
        assert [t["id"] for t in tasks] == ["t2"]
        assert tasks[0]["status"] == "open"

    @pytest.mark.asyncio
    async def test_registered_at_uses_clock(self, plaza, coordinator, clock):
        await plaza.register("scout")

        card = coordinator.agents.get("scout").card
        assert card.registered_at == clock.now
        assert card.status == AgentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, {"type": "register", "payload": {"name": "Nameless"}})

        assert conn.payloads("error") == [
            {"error": "Missing required agent card fields: id, wallet"}
        ]
        assert coordinator.agents.agent_count == 0

    @pytest.mark.asyncio
    async def test_reregister_overwrites_card(self, plaza, coordinator, clock):
        conn = await plaza.register("scout", capabilities=["research"])
        clock.advance(5)

        await plaza.register("scout", capabilities=["research", "analysis"], conn=conn)

        card = coordinator.agents.get("scout").card
        assert card.capabilities == ["research", "analysis"]
        assert card.registered_at == clock.now
        assert coordinator.agents.agent_count == 1

    @pytest.mark.asyncio
    async def test_reregister_elsewhere_closes_old_connection(self, plaza, coordinator):
        old = await plaza.register("scout")
        watcher = await plaza.register("syntax")
        new = await plaza.register("scout")
        watcher.clear()

        assert old.closed == (1000, "Agent re-registered")
        assert coordinator.agents.get("scout").conn_id == new.conn_id

        # The superseded connection closing must not take the agent offline
        await plaza.disconnect(old)
        assert "scout" in coordinator.agents
        assert watcher.of_type("agent_offline") == []

    @pytest.mark.asyncio
    async def test_reregister_elsewhere_does_not_wait_for_old_close(self, plaza, coordinator):
        old = await plaza.connect(hang_on_close=True)
        await plaza.register("scout", conn=old)
        new = await plaza.connect()
        other = await plaza.connect()

        for conn, agent_id in ((new, "scout"), (other, "syntax")):
            await asyncio.wait_for(
                coordinator.handle_frame(conn.conn_id, create_register(
                    agent_id=agent_id, name=agent_id.title(), wallet=f"wallet-{agent_id}"
                ).to_json()),
                timeout=1,
            )
        await asyncio.sleep(0)

        assert coordinator.agents.get("scout").conn_id == new.conn_id
        assert "syntax" in coordinator.agents
        assert old.closed == (1000, "Agent re-registered")

    @pytest.mark.asyncio
    async def test_second_agent_on_connection_takes_first_offline(self, plaza, coordinator):
        watcher = await plaza.register("watcher")
        shared = await plaza.register("first")
        watcher.clear()

        await plaza.register("second", conn=shared)

        assert watcher.payloads("agent_offline") == [{"agentId": "first"}]
        assert [p["agent"]["id"] for p in watcher.payloads("agent_online")] == ["second"]
        assert shared.of_type("agent_offline") == []
        assert sorted(c.id for c in coordinator.agents.cards()) == ["second", "watcher"]

        # Closing the shared connection only takes the current agent offline
        await plaza.disconnect(shared)
        assert watcher.payloads("agent_offline") == [{"agentId": "first"}, {"agentId": "second"}]


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_presence(self, plaza, coordinator, clock):
        conn = await plaza.register("scout")
        clock.advance(20)

        await plaza.send(conn, create_heartbeat("scout", AgentStatus.BUSY))

        agent = coordinator.agents.get("scout")
        assert agent.last_heartbeat == clock.now
        assert agent.card.status == AgentStatus.BUSY

    @pytest.mark.asyncio
    async def test_heartbeat_without_status_means_available(self, plaza, coordinator):
        conn = await plaza.register("scout")
        coordinator.agents.set_status("scout", AgentStatus.BUSY)

        await plaza.send(conn, {"type": "heartbeat", "from": "scout", "payload": {}})

        assert coordinator.agents.get("scout").card.status == AgentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_heartbeat_from_unknown_sender_is_ignored(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, create_heartbeat("ghost"))

        assert "ghost" not in coordinator.agents
        assert conn.frames == []

    @pytest.mark.asyncio
    async def test_unknown_sender_with_bad_status_is_ignored(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, {
            "type": "heartbeat",
            "from": "ghost",
            "payload": {"status": "sleeping"},
        })

        assert "ghost" not in coordinator.agents
        assert conn.frames == []

    @pytest.mark.asyncio
    async def test_registered_sender_with_bad_status_is_rejected(self, plaza, coordinator):
        conn = await plaza.register("scout")
        conn.clear()

        await plaza.send(conn, {
            "type": "heartbeat",
            "from": "scout",
            "payload": {"status": "sleeping"},
        })

        assert conn.payloads("error")[0]["error"].startswith("Invalid heartbeat payload")
        assert coordinator.agents.get("scout").card.status == AgentStatus.AVAILABLE



class TestTaskAnnounce:

    @pytest.mark.asyncio
    async def test_new_task_broadcast_to_registered_agents(self, plaza, coordinator, clock):
        scout = await plaza.register("scout")
        poster = await plaza.connect()

        await plaza.announce(poster, "t1", title="Research AI agent frameworks")

        new_tasks = scout.payloads("new_task")
        assert len(new_tasks) == 1
        task = new_tasks[0]["task"]
        assert task["id"] == "t1"
        assert task["status"] == "open"
        assert task["bountyAmount"] == 25_000_000
        assert task["createdAt"] == clock.now
        assert "assignedAgent" not in task
        # Unregistered poster is not a broadcast recipient
        assert poster.frames == []

    @pytest.mark.asyncio
    async def test_generates_id_when_missing(self, plaza, coordinator):
        scout = await plaza.register("scout")

        await plaza.send(scout, create_task_announce(title="Untitled work"))

        task_id = scout.payloads("new_task")[0]["task"]["id"]
        assert task_id
        assert task_id in coordinator.tasks

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, plaza, coordinator):
        scout = await plaza.register("scout")
        poster = await plaza.connect()
        await plaza.announce(poster, "t1", title="Original")

        await plaza.announce(poster, "t1", title="Impostor")

        assert poster.payloads("error") == [{"error": "Task already exists"}]
        assert coordinator.tasks.get("t1").title == "Original"
        assert len(scout.of_type("new_task")) == 1

    @pytest.mark.asyncio
    async def test_missing_title_rejected(self, plaza, coordinator):
        poster = await plaza.connect()

        await plaza.send(poster, {"type": "task_announce", "payload": {"bountyAmount": 5}})

        error = poster.payloads("error")[0]["error"]
        assert error.startswith("Invalid task_announce payload")
        assert coordinator.tasks.task_count == 0


class TestTaskClaim:
    """Claim arbitration."""

    @pytest.mark.asyncio
    async def test_claim_assigns_and_broadcasts(self, plaza, coordinator):
        scout = await plaza.register("scout", name="Scout")
        syntax = await plaza.register("syntax")
        await plaza.announce(scout, "t1")

        await plaza.send(scout, create_task_claim("t1", "scout"))

        expected = {"taskId": "t1", "agentId": "scout", "agentName": "Scout"}
        assert scout.payloads("task_claimed") == [expected]
        assert syntax.payloads("task_claimed") == [expected]

        task = coordinator.tasks.get("t1")
        assert task.status == TaskStatus.CLAIMED
        assert task.assigned_agent == "scout"
        assert coordinator.agents.get("scout").card.status == AgentStatus.BUSY

    @pytest.mark.asyncio
    async def test_second_claim_fails(self, plaza, coordinator):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")
        await plaza.announce(scout, "t1")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        await plaza.send(syntax, create_task_claim("t1", "syntax"))

        assert syntax.payloads("error") == [{"error": "Task is no longer available"}]
        assert scout.of_type("error") == []
        assert coordinator.tasks.get("t1").assigned_agent == "scout"
        assert len(syntax.of_type("task_claimed")) == 1

    @pytest.mark.asyncio
    async def test_repeat_claim_by_winner_fails(self, plaza):
        scout = await plaza.register("scout")
        await plaza.announce(scout, "t1")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        await plaza.send(scout, create_task_claim("t1", "scout"))

        assert scout.payloads("error") == [{"error": "Task is no longer available"}]

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, plaza, coordinator):
        conns = [await plaza.register(f"agent-{i}") for i in range(5)]
        await plaza.announce(conns[0], "t1")

        await asyncio.gather(*(
            coordinator.handle_frame(conn.conn_id, create_task_claim("t1", f"agent-{i}").to_json())
            for i, conn in enumerate(conns)
        ))
        await coordinator.relay.flush()

        winners = {p["agentId"] for p in conns[0].payloads("task_claimed")}
        errors = [e for conn in conns for e in conn.payloads("error")]
        assert len(winners) == 1
        assert len(errors) == 4
        assert all(e["error"] == "Task is no longer available" for e in errors)
        assert coordinator.tasks.get("t1").assigned_agent in winners

    @pytest.mark.asyncio
    async def test_unknown_task(self, plaza):
        scout = await plaza.register("scout")

        await plaza.send(scout, create_task_claim("missing", "scout"))

        assert scout.payloads("error") == [{"error": "Task not found"}]

    @pytest.mark.asyncio
    async def test_unregistered_agent(self, plaza, coordinator):
        poster = await plaza.connect()
        await plaza.announce(poster, "t1")

        await plaza.send(poster, create_task_claim("t1", "ghost"))

        assert poster.payloads("error") == [{"error": "Agent not registered"}]
        assert coordinator.tasks.get("t1").status == TaskStatus.OPEN

    @pytest.mark.asyncio
    async def test_task_checks_come_before_agent_check(self, plaza):
        poster = await plaza.connect()

        await plaza.send(poster, create_task_claim("missing", "ghost"))

        assert poster.payloads("error") == [{"error": "Task not found"}]


class TestAgentMessage:

    @pytest.mark.asyncio
    async def test_public_message_reaches_everyone(self, plaza):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")

        await plaza.send(scout, create_agent_message("scout", "I'll take it", confidence_level=0.8))

        for conn in (scout, syntax):
            payload = conn.payloads("plaza_message")[0]
            assert payload["from"] == "scout"
            assert payload["content"] == "I'll take it"
            assert payload["confidenceLevel"] == 0.8
            assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_message_without_recipient_is_public(self, plaza):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")

        await plaza.send(scout, {
            "type": "agent_message",
            "from": "scout",
            "payload": {"content": "hello all"},
        })

        assert syntax.payloads("plaza_message")[0]["content"] == "hello all"

    @pytest.mark.asyncio
    async def test_direct_message_reaches_only_recipient(self, plaza):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")
        bystander = await plaza.register("bystander")

        await plaza.send(scout, create_agent_message("scout", "psst", to="syntax", confidence_level=0.6))

        assert syntax.payloads("direct_message") == [
            {"from": "scout", "content": "psst", "confidenceLevel": 0.6}
        ]
        assert scout.of_type("direct_message") == []
        assert bystander.of_type("direct_message") == []
        assert bystander.of_type("plaza_message") == []

    @pytest.mark.asyncio
    async def test_envelope_recipient_is_used(self, plaza):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")

        await plaza.send(scout, {
            "type": "agent_message",
            "from": "scout",
            "to": "syntax",
            "payload": {"content": "via envelope"},
        })

        assert syntax.payloads("direct_message")[0]["content"] == "via envelope"

    @pytest.mark.asyncio
    async def test_direct_message_to_unknown_agent_is_dropped(self, plaza):
        scout = await plaza.register("scout")
        scout.clear()

        await plaza.send(scout, create_agent_message("scout", "anyone?", to="ghost"))

        assert scout.frames == []


class TestWorkUpdate:

    @pytest.mark.asyncio
    async def test_progress_broadcast(self, plaza, coordinator):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")
        await plaza.announce(scout, "t1")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        await plaza.send(scout, create_work_update("scout", "t1", TaskStatus.IN_PROGRESS, 50))

        progress = syntax.payloads("work_progress")[0]
        assert progress["taskId"] == "t1"
        assert progress["agentId"] == "scout"
        assert progress["status"] == "in_progress"
        assert progress["progress"] == 50
        assert coordinator.tasks.get("t1").status == TaskStatus.IN_PROGRESS
        assert coordinator.agents.get("scout").card.status == AgentStatus.BUSY

    @pytest.mark.asyncio
    async def test_submitted_frees_agent(self, plaza, coordinator):
        scout = await plaza.register("scout")
        await plaza.announce(scout, "t1")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        await plaza.send(scout, create_work_update(
            "scout", "t1", TaskStatus.SUBMITTED, work_hash="QmResult"
        ))

        assert scout.payloads("work_progress")[0]["workHash"] == "QmResult"
        assert coordinator.tasks.get("t1").status == TaskStatus.SUBMITTED
        assert coordinator.agents.get("scout").card.status == AgentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_status_is_overwritten_without_transition_check(self, plaza, coordinator):
        scout = await plaza.register("scout")
        await plaza.announce(scout, "t1")

        await plaza.send(scout, create_work_update("scout", "t1", TaskStatus.COMPLETED))

        assert coordinator.tasks.get("t1").status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_task_is_ignored(self, plaza):
        scout = await plaza.register("scout")
        scout.clear()

        await plaza.send(scout, create_work_update("scout", "missing", TaskStatus.IN_PROGRESS))

        assert scout.frames == []

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, plaza, coordinator):
        scout = await plaza.register("scout")
        await plaza.announce(scout, "t1")

        await plaza.send(scout, {
            "type": "work_update",
            "from": "scout",
            "payload": {"taskId": "t1", "status": "abandoned"},
        })

        assert scout.payloads("error")[0]["error"].startswith("Invalid work_update payload")
        assert coordinator.tasks.get("t1").status == TaskStatus.OPEN


class TestCoordinationRequest:

    @pytest.mark.asyncio
    async def test_candidates_ranked_and_filtered(self, plaza):
        requester = await plaza.register("requester", capabilities=["research"])
        await plaza.register("weak", capabilities=["code_review"], success_rate=70)
        await plaza.register("strong", specializations=["code_review"], success_rate=95)
        await plaza.register("designer", capabilities=["design"], success_rate=99)
        busy = await plaza.register("busy", capabilities=["code_review"], success_rate=100)
        await plaza.send(busy, create_heartbeat("busy", AgentStatus.BUSY))

        await plaza.send(requester, create_coordination_request(
            "requester", "t1", "Review the smart contract", ["code_review"]
        ))

        opportunity = requester.payloads("coordination_opportunity")[0]
        assert opportunity["requestingAgent"] == "requester"
        assert opportunity["subtask"] == "Review the smart contract"
        assert opportunity["requiredCapabilities"] == ["code_review"]
        assert [c["id"] for c in opportunity["candidates"]] == ["strong", "weak"]

    @pytest.mark.asyncio
    async def test_broadcast_even_without_candidates(self, plaza):
        requester = await plaza.register("requester")
        other = await plaza.register("other")

        await plaza.send(requester, create_coordination_request(
            "requester", None, "Translate", ["translation"]
        ))

        assert other.payloads("coordination_opportunity")[0]["candidates"] == []


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, plaza, coordinator):
        scout = await plaza.register("scout")

        await plaza.send(scout, create_subscribe("scout", ["research", "defi"]))
        await plaza.send(scout, create_unsubscribe("scout", ["defi"]))

        assert scout.payloads("subscribed") == [{"topics": ["research", "defi"]}]
        assert scout.payloads("unsubscribed") == [{"topics": ["research"]}]
        assert coordinator.agents.get("scout").subscriptions == {"research"}

    @pytest.mark.asyncio
    async def test_subscriptions_do_not_filter_broadcasts(self, plaza):
        scout = await plaza.register("scout")
        await plaza.send(scout, create_subscribe("scout", ["design"]))

        await plaza.announce(scout, "t1", requirements=["research"])

        assert len(scout.of_type("new_task")) == 1

    @pytest.mark.asyncio
    async def test_subscribe_for_unknown_agent_is_ignored(self, plaza):
        conn = await plaza.connect()

        await plaza.send(conn, create_subscribe("ghost", ["research"]))

        assert conn.frames == []


class TestMalformedFrames:

    @pytest.mark.asyncio
    async def test_non_json(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, "this is not json")

        assert conn.payloads("error") == [{"error": "Invalid message format"}]
        assert len(coordinator.message_log) == 0

    @pytest.mark.asyncio
    async def test_unknown_type(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, {"type": "teleport", "payload": {}})

        assert conn.payloads("error") == [{"error": "Unknown message type: teleport"}]
        # Types outside the protocol never reach the message log
        assert len(coordinator.message_log) == 0

    @pytest.mark.asyncio
    async def test_server_only_type_from_client(self, plaza, coordinator):
        conn = await plaza.connect()

        await plaza.send(conn, {"type": "task_claimed", "payload": {}})

        assert conn.payloads("error") == [{"error": "Unknown message type: task_claimed"}]
        # Decoded envelopes are logged even when rejected
        assert len(coordinator.message_log) == 1

    @pytest.mark.asyncio
    async def test_connection_survives_errors(self, plaza):
        conn = await plaza.connect()
        await plaza.send(conn, "garbage")

        await plaza.register("scout", conn=conn)

        assert conn.types() == ["error", "registered", "open_tasks"]


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_offline_broadcast_and_task_kept(self, plaza, coordinator):
        scout = await plaza.register("scout")
        syntax = await plaza.register("syntax")
        await plaza.announce(scout, "t1")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        await plaza.disconnect(scout)

        assert syntax.payloads("agent_offline") == [{"agentId": "scout"}]
        assert "scout" not in coordinator.agents
        assert coordinator.relay.connection_count == 1
        task = coordinator.tasks.get("t1")
        assert task.status == TaskStatus.CLAIMED
        assert task.assigned_agent == "scout"

    @pytest.mark.asyncio
    async def test_unregistered_connection_closes_quietly(self, plaza):
        scout = await plaza.register("scout")
        viewer = await plaza.connect()

        await plaza.disconnect(viewer)

        assert scout.of_type("agent_offline") == []


class TestMessageLogging:

    @pytest.mark.asyncio
    async def test_every_decoded_envelope_is_logged(self, plaza, coordinator):
        scout = await plaza.register("scout")
        await plaza.send(scout, create_heartbeat("scout"))
        await plaza.send(scout, create_agent_message("scout", "hi"))

        recent = await coordinator.recent_messages(limit=10)

        assert [m.type.value for m in recent] == ["agent_message", "heartbeat", "register"]

    @pytest.mark.asyncio
    async def test_stats(self, plaza, coordinator):
        scout = await plaza.register("scout")
        await plaza.announce(scout, "t1")
        await plaza.announce(scout, "t2")
        await plaza.send(scout, create_task_claim("t1", "scout"))

        stats = await coordinator.stats()

        assert stats["agents"] == 1
        assert stats["available"] == 0
        assert stats["tasks"] == 2
        assert stats["open_tasks"] == 1
        assert stats["messages"] == 4
        assert stats["connections"] == 1


class TestMarketplaceScenario:
    """Two scouts race for the same task, the winner walks away."""

    @pytest.mark.asyncio
    async def test_abandoned_task_stays_claimed(self, plaza, coordinator):
        scout_1 = await plaza.register("scout-1", capabilities=["research"])
        scout_2 = await plaza.register("scout-2", capabilities=["research"])
        poster = await plaza.connect()

        await plaza.announce(poster, "task-1", requirements=["research"])
        assert len(scout_1.of_type("new_task")) == 1
        assert len(scout_2.of_type("new_task")) == 1

        await plaza.send(scout_1, create_agent_message("scout-1", "I can do this", confidence_level=0.9))
        await plaza.send(scout_2, create_agent_message("scout-2", "Me too", confidence_level=0.7))
        await plaza.send(scout_1, create_task_claim("task-1", "scout-1"))
        await plaza.send(scout_2, create_task_claim("task-1", "scout-2"))

        assert scout_2.payloads("error") == [{"error": "Task is no longer available"}]
        assert scout_2.payloads("task_claimed")[0]["agentId"] == "scout-1"

        await plaza.disconnect(scout_1)

        assert scout_2.payloads("agent_offline") == [{"agentId": "scout-1"}]
        task = await coordinator.get_task("task-1")
        assert task.status == TaskStatus.CLAIMED
        assert task.assigned_agent == "scout-1"

        # Nobody can pick it up again
        await plaza.send(scout_2, create_task_claim("task-1", "scout-2"))
        assert len(scout_2.of_type("error")) == 2
