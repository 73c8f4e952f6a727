import pytest

import game_rules
from board_factory import make_board_payload
from game_rules import ErrorKind, TriviaGameError
from trivia_board import CLUE_VALUES


def _create_room(client, name="Host"):
    response = client.post("/api/trivia/rooms", json={"player_name": name})
    assert response.status_code == 200
    payload = response.get_json()
    return payload["room_code"], payload["player_id"]


def _join(client, room_code, name):
    response = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": name}
    )
    assert response.status_code == 200
    return response.get_json()["player_id"]


def _state(client, room_code, player_id):
    return client.get(
        f"/api/trivia/rooms/{room_code}", query_string={"player_id": player_id}
    )


def _post(client, room_code, action, **body):
    return client.post(f"/api/trivia/rooms/{room_code}/{action}", json=body)


def _started_room(client, guests=("Guest",)):
    room_code, host_id = _create_room(client)
    guest_ids = [_join(client, room_code, name) for name in guests]
    start = _post(
        client, room_code, "start", player_id=host_id, board=make_board_payload()
    )
    assert start.status_code == 200
    return room_code, host_id, guest_ids


def _set_phase(trivia_service, room_code, phase):
    with trivia_service._connect() as conn:
        conn.execute(
            "UPDATE tg_games SET phase = ? WHERE room_code = ?", (phase, room_code)
        )


def test_lobby_create_join_and_state(client):
    room_code, host_id = _create_room(client)
    assert len(room_code) == 6
    guest_id = _join(client, room_code, "Guest")

    host_view = _state(client, room_code, host_id).get_json()
    assert [p["display_name"] for p in host_view["players"]] == ["Host", "Guest"]
    assert host_view["room"]["status"] == "lobby"
    assert host_view["room"]["host_player_id"] == host_id
    assert host_view["viewer"]["is_host"] is True
    assert host_view["can"]["start"] is True
    assert host_view["game"] is None

    guest_view = _state(client, room_code, guest_id).get_json()
    assert guest_view["viewer"]["is_host"] is False
    assert guest_view["can"]["start"] is False


def test_create_room_returns_join_url(client):
    response = client.post("/api/trivia/rooms", json={"player_name": "Host"})
    payload = response.get_json()
    assert payload["join_url"] == f"http://localhost:8040/?room={payload['room_code']}"


def test_join_validation_errors(client):
    room_code, _host_id = _create_room(client)

    duplicate = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": "host"}
    )
    assert duplicate.status_code == 409
    assert duplicate.get_json()["code"] == "conflict"

    nameless = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": "   "}
    )
    assert nameless.status_code == 400
    assert nameless.get_json()["code"] == "invalid_input"

    missing = client.post("/api/trivia/rooms/ZZZZZZ/join", json={"player_name": "X"})
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "not_found"
    assert missing.get_json()["error"] == "Room not found."


def test_rejoin_with_player_id_refreshes_name(client):
    room_code, _host_id = _create_room(client)
    guest_id = _join(client, room_code, "Guest")

    rejoin = client.post(
        f"/api/trivia/rooms/{room_code}/join",
        json={"player_name": "Renamed Guest", "player_id": guest_id},
    )
    assert rejoin.status_code == 200
    payload = rejoin.get_json()
    assert payload["player_id"] == guest_id
    assert payload["rejoined"] is True

    state = _state(client, room_code, guest_id).get_json()
    assert state["viewer"]["display_name"] == "Renamed Guest"
    assert len(state["players"]) == 2


def test_room_is_capped_at_eight_players(client):
    room_code, _host_id = _create_room(client)
    for index in range(7):
        _join(client, room_code, f"Player {index}")
    full = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": "Latecomer"}
    )
    assert full.status_code == 409
    assert "8 players max" in full.get_json()["message"]


def test_unknown_viewer_is_rejected(client):
    room_code, _host_id = _create_room(client)
    response = _state(client, room_code, "not-a-player")
    assert response.status_code == 403
    assert response.get_json()["code"] == "unauthorized"


def test_only_host_can_start_and_board_is_validated(client):
    room_code, host_id = _create_room(client)
    guest_id = _join(client, room_code, "Guest")

    by_guest = _post(
        client, room_code, "start", player_id=guest_id, board=make_board_payload()
    )
    assert by_guest.status_code == 403

    bad_board = make_board_payload()
    bad_board["categories"] = bad_board["categories"][:2]
    invalid = _post(client, room_code, "start", player_id=host_id, board=bad_board)
    assert invalid.status_code == 400
    body = invalid.get_json()
    assert body["code"] == "invalid_input"
    assert body["message"] == "Board validation failed."
    assert body["details"]

    nothing = _post(client, room_code, "start", player_id=host_id)
    assert nothing.status_code == 400


def test_start_sets_first_turn_and_hides_answers(client):
    room_code, host_id, (guest_id,) = _started_room(client)

    state = _state(client, room_code, guest_id).get_json()
    game = state["game"]
    assert state["room"]["status"] == "playing"
    assert game["phase"] == "selecting"
    assert game["turn_player_id"] == host_id
    assert game["total_clues"] == 25
    assert all(p["score"] == 0 for p in state["players"])
    first_clue = game["board"]["categories"][0]["clues"][0]
    assert first_clue["revealed"] is False
    assert "answer" not in first_clue
    assert "question" not in first_clue
    assert state["can"]["select"] is False

    again = _post(
        client, room_code, "start", player_id=host_id, board=make_board_payload()
    )
    assert again.status_code == 409
    assert again.get_json()["code"] == "invalid_phase"


def test_full_game_flow_through_final_round(client, services, stub_ai):
    room_code, host_id, (guest_id,) = _started_room(client)

    clue_ids = [
        f"c{cat_index}-{value}" for cat_index in range(1, 6) for value in CLUE_VALUES
    ]
    for index, clue_id in enumerate(clue_ids):
        selected = _post(client, room_code, "select", player_id=host_id, clue_id=clue_id)
        assert selected.status_code == 200
        selected_game = selected.get_json()["game"]
        assert selected_game["phase"] == "answering"
        assert selected_game["selected_clue"]["id"] == clue_id
        assert "answer" not in selected_game["selected_clue"]

        answered = _post(
            client,
            room_code,
            "answer",
            player_id=host_id,
            answer="whatever",
            is_correct=True,
        )
        assert answered.status_code == 200
        game = answered.get_json()["game"]
        assert game["revealed_count"] == index + 1
        assert game["last_result"]["correct_answer"].startswith("Answer")

        if index < len(clue_ids) - 1:
            assert game["phase"] == "revealing"
            cont = _post(client, room_code, "continue", player_id=host_id)
            assert cont.get_json()["game"]["turn_player_id"] == host_id
        else:
            assert game["phase"] == "final_wager"

    state = _state(client, room_code, host_id).get_json()
    host_score = next(p["score"] for p in state["players"] if p["player_id"] == host_id)
    assert host_score == 5 * sum(CLUE_VALUES)
    assert state["game"]["final"]["question"] is None
    assert state["game"]["final"]["max_wager"] == host_score

    too_much = _post(
        client, room_code, "final/wager", player_id=guest_id, wager=1001
    )
    assert too_much.status_code == 400
    assert too_much.get_json()["code"] == "invalid_input"

    assert _post(
        client, room_code, "final/wager", player_id=host_id, wager=host_score
    ).status_code == 200
    wagered = _post(client, room_code, "final/wager", player_id=guest_id, wager=1000)
    final = wagered.get_json()["game"]["final"]
    assert wagered.get_json()["game"]["phase"] == "final_answering"
    assert final["question"].startswith("Who wrote")
    assert final["answer"] is None

    host_answer = _post(
        client, room_code, "final/answer", player_id=host_id, answer="Ada Lovelace"
    )
    assert host_answer.status_code == 200
    assert stub_ai.validation_requests[-1][2] == "Ada Lovelace"

    _post(
        client,
        room_code,
        "final/answer",
        player_id=guest_id,
        answer="Charles Babbage",
        is_correct=False,
    )
    revealing = _state(client, room_code, guest_id).get_json()
    assert revealing["game"]["phase"] == "final_revealing"
    assert revealing["can"]["reveal"] is True

    revealed = _post(client, room_code, "final/reveal", player_id=guest_id)
    payload = revealed.get_json()
    scores = {p["player_id"]: p["score"] for p in payload["players"]}
    assert payload["game"]["phase"] == "finished"
    assert payload["room"]["status"] == "finished"
    assert scores[host_id] == host_score * 2
    assert scores[guest_id] == -1000
    assert payload["game"]["final"]["answer"] == "Ada Lovelace"
    assert payload["can"]["cleanup"] is True

    cleanup = _post(client, room_code, "cleanup")
    assert cleanup.get_json() == {"ok": True, "deleted": True}
    assert _state(client, room_code, host_id).status_code == 404
    assert services.get_runtime_metrics()["answers_judged"] == 1


def test_incorrect_answer_rotates_turn(client):
    room_code, host_id, (guest_id,) = _started_room(client)

    _post(client, room_code, "select", player_id=host_id, clue_id="c2-400")
    answered = _post(
        client, room_code, "answer", player_id=host_id, answer="no", is_correct=False
    )
    scores = {p["player_id"]: p["score"] for p in answered.get_json()["players"]}
    assert scores[host_id] == -400

    cont = _post(client, room_code, "continue", player_id=host_id).get_json()
    assert cont["game"]["turn_player_id"] == guest_id
    assert cont["game"]["last_result"] is None
    assert cont["can"]["select"] is False


def test_answer_is_judged_when_correctness_is_omitted(client, stub_ai):
    room_code, host_id, _guests = _started_room(client)
    _post(client, room_code, "select", player_id=host_id, clue_id="c1-200")
    answered = _post(client, room_code, "answer", player_id=host_id, answer="answer 1-200")
    last_result = answered.get_json()["game"]["last_result"]
    assert last_result["is_correct"] is True
    assert last_result["points_delta"] == 200
    assert stub_ai.validation_requests == [
        ("Question 1-200?", "Answer 1-200", "answer 1-200")
    ]


def test_skip_and_turn_guards(client):
    room_code, host_id, (guest_id,) = _started_room(client)

    not_your_turn = _post(
        client, room_code, "select", player_id=guest_id, clue_id="c1-200"
    )
    assert not_your_turn.status_code == 403
    assert not_your_turn.get_json()["code"] == "unauthorized"

    early_answer = _post(
        client, room_code, "answer", player_id=host_id, answer="x", is_correct=True
    )
    assert early_answer.status_code == 409
    assert early_answer.get_json()["code"] == "invalid_phase"

    _post(client, room_code, "select", player_id=host_id, clue_id="c1-200")
    skipped = _post(client, room_code, "skip", player_id=host_id).get_json()
    assert skipped["game"]["last_result"]["player_name"] == "No one"

    _post(client, room_code, "continue", player_id=host_id)
    again = _post(client, room_code, "select", player_id=guest_id, clue_id="c1-200")
    assert again.status_code == 409


def test_host_leaving_mid_answer_migrates_host_and_turn(client):
    room_code, host_id, (guest_id,) = _started_room(client)
    _post(client, room_code, "select", player_id=host_id, clue_id="c1-400")

    left = _post(client, room_code, "leave", player_id=host_id).get_json()
    assert left["ok"] is True
    assert left["ended"] is False
    assert left["host_player_id"] == guest_id

    state = _state(client, room_code, guest_id).get_json()
    assert state["room"]["host_player_id"] == guest_id
    assert state["game"]["phase"] == "selecting"
    assert state["game"]["selected_clue_id"] is None
    assert state["game"]["turn_player_id"] == guest_id
    assert [p["player_id"] for p in state["players"]] == [guest_id]
    assert state["players"][0]["seat"] == 1


def test_host_leaving_lobby_closes_room(client):
    room_code, host_id = _create_room(client)
    guest_id = _join(client, room_code, "Guest")

    left = _post(client, room_code, "leave", player_id=host_id).get_json()
    assert left["ended"] is True
    assert _state(client, room_code, guest_id).status_code == 404


def test_guest_leaving_lobby_keeps_room(client):
    room_code, host_id = _create_room(client)
    guest_id = _join(client, room_code, "Guest")

    left = _post(client, room_code, "leave", player_id=guest_id).get_json()
    assert left["ended"] is False
    state = _state(client, room_code, host_id).get_json()
    assert len(state["players"]) == 1


def test_last_player_leaving_game_deletes_room(client):
    room_code, host_id, _guests = _started_room(client, guests=())
    left = _post(client, room_code, "leave", player_id=host_id).get_json()
    assert left["ended"] is True
    assert _post(client, room_code, "leave", player_id=host_id).get_json()["ended"] is True


def test_join_blocked_in_final_round_and_after_finish(client, trivia_service):
    room_code, _host_id, _guests = _started_room(client)

    _set_phase(trivia_service, room_code, "final_wager")
    blocked = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": "Late"}
    )
    assert blocked.status_code == 409
    assert "final round" in blocked.get_json()["message"]

    with trivia_service._connect() as conn:
        conn.execute(
            "UPDATE tg_rooms SET status = 'finished' WHERE code = ?", (room_code,)
        )
    finished = client.post(
        f"/api/trivia/rooms/{room_code}/join", json={"player_name": "Later"}
    )
    assert finished.status_code == 409
    assert "already finished" in finished.get_json()["message"]


def test_mid_game_join_adds_player_to_rotation(client):
    room_code, host_id, (guest_id,) = _started_room(client)
    late_id = _join(client, room_code, "Late")

    _post(client, room_code, "select", player_id=host_id, clue_id="c1-200")
    _post(client, room_code, "answer", player_id=host_id, answer="x", is_correct=False)
    _post(client, room_code, "continue", player_id=host_id)
    _post(client, room_code, "select", player_id=guest_id, clue_id="c1-400")
    _post(client, room_code, "answer", player_id=guest_id, answer="x", is_correct=False)
    cont = _post(client, room_code, "continue", player_id=guest_id).get_json()
    assert cont["game"]["turn_player_id"] == late_id


def test_cleanup_only_for_finished_rooms(client):
    room_code, _host_id, _guests = _started_room(client)
    in_progress = _post(client, room_code, "cleanup")
    assert in_progress.status_code == 409
    assert in_progress.get_json()["code"] == "invalid_phase"

    missing = _post(client, "QQQQQQ", "cleanup")
    assert missing.get_json() == {"ok": True, "deleted": False}


def test_poll_returns_on_revision_change(client):
    room_code, host_id = _create_room(client)
    revision = _state(client, room_code, host_id).get_json()["revision"]

    _join(client, room_code, "Guest")
    polled = client.get(
        f"/api/trivia/rooms/{room_code}/poll",
        query_string={"player_id": host_id, "since": revision, "timeout": 5},
    ).get_json()
    assert polled["revision"] > revision
    assert len(polled["players"]) == 2

    idle = client.get(
        f"/api/trivia/rooms/{room_code}/poll",
        query_string={"player_id": host_id, "since": polled["revision"], "timeout": 0},
    ).get_json()
    assert idle["revision"] == polled["revision"]


def test_wait_for_update_sleeps_until_deadline(trivia_service):
    created = trivia_service.create_room("Host")
    naps = []
    trivia_service._sleep = naps.append

    state = trivia_service.wait_for_update(
        created["room_code"], created["player_id"], since_revision=10_000, timeout_seconds=0.01
    )
    assert state["room"]["code"] == created["room_code"]
    assert all(nap == trivia_service.POLL_INTERVAL_SECONDS for nap in naps)


def test_presence_sweep_removes_silent_players(client, trivia_service):
    room_code, host_id, (guest_id,) = _started_room(client)
    trivia_service.presence_timeout_seconds = 30
    with trivia_service._connect() as conn:
        conn.execute(
            "UPDATE tg_players SET last_seen_at = 0 WHERE player_id = ?", (guest_id,)
        )

    state = _state(client, room_code, host_id).get_json()
    assert [p["player_id"] for p in state["players"]] == [host_id]
    assert state["game"]["turn_player_id"] == host_id


def test_start_from_source_text_generates_board(client, stub_ai, services):
    room_code, host_id = _create_room(client)
    started = _post(
        client,
        room_code,
        "start",
        player_id=host_id,
        chunks=["Photosynthesis converts light into chemical energy in plants."],
        difficulty="easy",
    )
    assert started.status_code == 200
    assert started.get_json()["game"]["phase"] == "selecting"
    assert stub_ai.board_requests[0]["difficulty"] == "easy"
    metrics = services.get_runtime_metrics()
    assert metrics["boards_generated"] == 1
    assert metrics["games_started"] == 1


def test_lost_race_reports_conflict_and_counts_metric(
    client, trivia_service, services, monkeypatch
):
    room_code, host_id, _guests = _started_room(client)

    def _losing_write(*_args, **_kwargs):
        raise TriviaGameError("The game changed.", ErrorKind.CONFLICT)

    monkeypatch.setattr(trivia_service, "_write_game", _losing_write)
    response = _post(client, room_code, "select", player_id=host_id, clue_id="c1-200")
    assert response.status_code == 409
    assert response.get_json()["code"] == "conflict"
    assert services.get_runtime_metrics()["transition_conflicts"] == 1


def test_stale_version_write_is_rejected_and_scores_apply_once(client, trivia_service):
    room_code, host_id, _guests = _started_room(client)
    _post(client, room_code, "select", player_id=host_id, clue_id="c1-600")

    stale = trivia_service._snapshot(room_code)
    transition = game_rules.submit_answer(stale, host_id, "x", True)
    with trivia_service._connect() as conn:
        trivia_service._write_game(conn, room_code, stale, transition)

    with pytest.raises(TriviaGameError) as exc_info:
        with trivia_service._connect() as conn:
            trivia_service._write_game(conn, room_code, stale, transition)
    assert exc_info.value.kind == ErrorKind.CONFLICT

    state = _state(client, room_code, host_id).get_json()
    scores = {p["player_id"]: p["score"] for p in state["players"]}
    assert scores[host_id] == 600
    assert state["game"]["version"] == stale.version + 1
