from __future__ import annotations

import asyncio

import pytest

from agentdeck.engine.adapters.tool_mapping import pick_auto_option
from agentdeck.engine.permissions import PermissionBridge, decision_for_option
from agentdeck.shared.models.permission import (
    DecisionOrigin,
    OptionKind,
    PermissionDecision,
    PermissionOption,
    PermissionPolicy,
    PermissionRequest,
)


def _options() -> list[PermissionOption]:
    return [
        PermissionOption("once", OptionKind.ALLOW_ONCE, "Allow once"),
        PermissionOption("always", OptionKind.ALLOW_ALWAYS, "Always allow"),
        PermissionOption("reject", OptionKind.REJECT_ONCE, "Reject"),
        PermissionOption("never", OptionKind.REJECT_ALWAYS, "Never"),
    ]


def _request(session_id: str = "s1", tool: str = "Bash") -> PermissionRequest:
    return PermissionRequest(
        session_id=session_id, tool_name=tool,
        tool_input={"command": "ls"}, options=_options(),
    )


def test_allow_everything_prefers_allow_always() -> None:
    option = pick_auto_option(_options(), PermissionPolicy.ALLOW_EVERYTHING)
    assert option.kind == OptionKind.ALLOW_ALWAYS


def test_auto_accept_once_never_grants_standing_permission() -> None:
    option = pick_auto_option(_options(), PermissionPolicy.AUTO_ACCEPT_ONCE)
    assert option.kind == OptionKind.ALLOW_ONCE

    only_always = [PermissionOption("always", OptionKind.ALLOW_ALWAYS)]
    assert pick_auto_option(only_always, PermissionPolicy.AUTO_ACCEPT_ONCE) is None


def test_ask_policy_never_auto_picks() -> None:
    assert pick_auto_option(_options(), PermissionPolicy.ASK) is None


@pytest.mark.asyncio
async def test_policy_resolution_does_not_surface() -> None:
    surfaced: list[PermissionRequest] = []
    bridge = PermissionBridge(on_surface=surfaced.append)

    decision = await bridge.request(_request(), PermissionPolicy.ALLOW_EVERYTHING)

    assert decision.allowed
    assert decision.option_id == "always"
    assert decision.for_session is True
    assert decision.origin == DecisionOrigin.POLICY
    assert surfaced == []
    assert bridge.pending_count("s1") == 0


@pytest.mark.asyncio
async def test_user_resolution_and_double_resolution_is_noop() -> None:
    resolved: list[tuple[str, str]] = []
    bridge = PermissionBridge(
        on_resolved=lambda req, dec: resolved.append((req.request_id, dec.behavior)),
    )
    request = _request()
    waiter = asyncio.create_task(bridge.request(request, PermissionPolicy.ASK))
    await asyncio.sleep(0)

    assert bridge.surfaced("s1") is request
    first = bridge.resolve(request.request_id, PermissionDecision(behavior="allow", option_id="once"))
    second = bridge.resolve(request.request_id, PermissionDecision.deny())

    assert first is True
    assert second is False
    decision = await waiter
    assert decision.allowed
    assert decision.origin == DecisionOrigin.USER
    assert resolved == [(request.request_id, "allow")]


@pytest.mark.asyncio
async def test_requests_surface_one_at_a_time_in_fifo_order() -> None:
    surfaced: list[str] = []
    bridge = PermissionBridge(on_surface=lambda req: surfaced.append(req.tool_name))
    first, second = _request(tool="Bash"), _request(tool="Edit")
    t1 = asyncio.create_task(bridge.request(first))
    t2 = asyncio.create_task(bridge.request(second))
    await asyncio.sleep(0)

    assert surfaced == ["Bash"]
    assert bridge.pending_count("s1") == 2

    bridge.resolve(first.request_id, PermissionDecision.deny())
    assert surfaced == ["Bash", "Edit"]
    assert bridge.surfaced("s1") is second

    bridge.resolve(second.request_id, PermissionDecision(behavior="allow"))
    assert (await t1).allowed is False
    assert (await t2).allowed is True


@pytest.mark.asyncio
async def test_deny_all_clears_every_pending_request_synchronously() -> None:
    bridge = PermissionBridge()
    other = _request(session_id="s2")
    tasks = [
        asyncio.create_task(bridge.request(_request())),
        asyncio.create_task(bridge.request(_request(tool="Write"))),
        asyncio.create_task(bridge.request(other)),
    ]
    await asyncio.sleep(0)

    denied = bridge.deny_all("s1")

    assert denied == 2
    assert bridge.pending_count("s1") == 0
    assert bridge.surfaced("s1") is None
    results = await asyncio.gather(tasks[0], tasks[1])
    assert all(r.origin == DecisionOrigin.FORCED and not r.allowed for r in results)
    # Other sessions are untouched.
    assert bridge.surfaced("s2") is other
    bridge.resolve(other.request_id, PermissionDecision(behavior="allow"))
    await tasks[2]


def test_decision_for_option_maps_ids_and_generic_choices() -> None:
    request = _request()

    always = decision_for_option(request, "always")
    assert always.allowed and always.for_session

    reject = decision_for_option(request, "reject")
    assert not reject.allowed and reject.option_id == "reject"

    generic = decision_for_option(request, "allow")
    assert generic.option_id == "once"

    with pytest.raises(ValueError):
        decision_for_option(request, "maybe")
