"""Tests for the lifecycle state table."""

from firebell.agents import REGISTRY, Agent
from firebell.monitoring.models import MatchType, ProcSample
from firebell.monitoring.state import State

CLAUDE = REGISTRY["claude"]
CODEX = REGISTRY["codex"]


class TestCueRecording:
    """Tests for cue priority and quiet-period bookkeeping."""

    def test_only_activity_is_weak(self) -> None:
        assert [t for t in MatchType if not t.is_strong] == [MatchType.ACTIVITY]

    def test_activity_does_not_replace_complete(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)

        state.record_cue("claude", MatchType.COMPLETE)
        clock.advance(3)
        state.record_cue("claude", MatchType.ACTIVITY)

        assert state.get_cue_type("claude") is MatchType.COMPLETE
        # The timestamp still moves forward
        assert state.get_agent("claude").last_cue == clock.now

    def test_activity_does_not_replace_holding(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)

        state.record_cue("claude", MatchType.HOLDING)
        state.record_cue("claude", MatchType.ACTIVITY)

        assert state.get_cue_type("claude") is MatchType.HOLDING

    def test_activity_replaces_awaiting(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)

        state.record_cue("claude", MatchType.AWAITING)
        state.record_cue("claude", MatchType.ACTIVITY)

        assert state.get_cue_type("claude") is MatchType.ACTIVITY

    def test_strong_cue_replaces_anything(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)

        state.record_cue("claude", MatchType.HOLDING)
        state.record_cue("claude", MatchType.COMPLETE)
        assert state.get_cue_type("claude") is MatchType.COMPLETE

        state.record_cue("claude", MatchType.HOLDING)
        assert state.get_cue_type("claude") is MatchType.HOLDING

    def test_unknown_key_is_ignored(self, clock) -> None:
        state = State(clock=clock)

        state.record_cue("nobody", MatchType.COMPLETE)

        assert state.get_cue_type("nobody") is None
        assert state.keys() == []

    def test_quiet_fires_once_per_cue(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)

        assert not state.should_send_quiet("claude", 10)

        state.record_cue("claude", MatchType.COMPLETE)
        clock.advance(9)
        assert not state.should_send_quiet("claude", 10)

        clock.advance(1)
        assert state.should_send_quiet("claude", 10)
        state.mark_quiet_notified("claude")
        clock.advance(60)
        assert not state.should_send_quiet("claude", 10)

    def test_new_cue_rearms_quiet(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)
        state.record_cue("claude", MatchType.COMPLETE)
        clock.advance(20)
        state.mark_quiet_notified("claude")

        state.record_cue("claude", MatchType.ACTIVITY)
        clock.advance(20)

        assert state.should_send_quiet("claude", 10)


class TestAgentsAndInstances:
    """Tests for record lookup and the tracking mode."""

    def test_add_agent_is_idempotent(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)
        state.record_cue("claude", MatchType.COMPLETE)

        state.add_agent(CLAUDE)

        assert state.get_cue_type("claude") is MatchType.COMPLETE
        assert [a.key for a in state.all_agents()] == ["claude"]

    def test_returned_records_are_copies(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)
        state.update_watched_paths("claude", ["/a.jsonl"])

        record = state.get_agent("claude")
        record.last_cue_type = MatchType.HOLDING
        record.watched_paths.append("/b.jsonl")

        fresh = state.get_agent("claude")
        assert fresh.last_cue_type is None
        assert fresh.watched_paths == ["/a.jsonl"]

    def test_get_agent_by_path(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)
        state.add_agent(CODEX)
        state.update_watched_paths("codex", ["/logs/rollout.jsonl"])

        assert state.get_agent_by_path("/logs/rollout.jsonl").key == "codex"
        assert state.get_agent_by_path("/elsewhere.jsonl") is None

    def test_per_instance_keys_are_file_paths(self, clock) -> None:
        state = State(per_instance=True, clock=clock)
        state.add_agent(CLAUDE)
        path = "/home/u/.claude/projects/-home-u-proj/abc.jsonl"

        instance = state.get_or_create_instance("claude", path)
        state.record_cue(path, MatchType.COMPLETE)
        # Agent keys are not cue keys in this mode
        state.record_cue("claude", MatchType.HOLDING)

        assert instance.key == path
        assert state.keys() == [path]
        assert state.get_cue_type(path) is MatchType.COMPLETE
        assert state.display_name(path) == "Claude Code (-home-u-)"

    def test_get_or_create_instance_keeps_state(self, clock) -> None:
        state = State(per_instance=True, clock=clock)
        state.get_or_create_instance("codex", "/s/rollout-1.jsonl")
        state.record_cue("/s/rollout-1.jsonl", MatchType.HOLDING)

        again = state.get_or_create_instance("codex", "/s/rollout-1.jsonl")

        assert again.last_cue_type is MatchType.HOLDING
        assert again.display_name == "Codex (rollout-1)"
        assert len(state.all_instances()) == 1

    def test_display_name_per_agent(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(Agent(name="x", display_name="X Agent", log_path="/tmp"))

        assert state.display_name("x") == "X Agent"
        assert state.display_name("missing") == "missing"


class TestProcessState:
    """Tests for process bookkeeping."""

    def test_set_pid_resets_process_state(self, clock) -> None:
        state = State(clock=clock)
        state.set_pid(100)
        state.mark_process_idle()
        state.mark_process_exited()

        state.set_pid(200)
        snapshot = state.process_snapshot()

        assert snapshot.pid == 200
        assert not snapshot.idle_notified
        assert not snapshot.exit_notified

    def test_idle_marking_keeps_first_timestamp(self, clock) -> None:
        state = State(clock=clock)
        state.set_pid(100)

        state.mark_process_idle()
        first = state.process_snapshot().idle_since
        clock.advance(30)
        state.mark_process_idle()

        assert state.process_snapshot().idle_since == first
        state.reset_process_idle()
        assert state.process_snapshot().idle_since is None
        assert not state.process_snapshot().idle_notified

    def test_process_snapshot_is_a_copy(self, clock) -> None:
        state = State(clock=clock)
        state.set_pid(100)
        state.update_proc_sample(ProcSample(cpu_seconds=1.0, wall=10.0, rss_bytes=1024))

        snapshot = state.process_snapshot()
        snapshot.last_sample.rss_bytes = 0
        snapshot.pid = 1

        assert state.process_snapshot().pid == 100
        assert state.process_snapshot().last_sample.rss_bytes == 1024
        assert not state.is_process_exit_notified()


class TestSnapshot:
    def test_snapshot_reports_sessions(self, clock) -> None:
        state = State(clock=clock)
        state.add_agent(CLAUDE)
        state.record_cue("claude", MatchType.HOLDING)
        clock.advance(4)
        state.set_pid(42)

        snapshot = state.snapshot()

        assert snapshot["mode"] == "per_agent"
        assert snapshot["sessions"] == [
            {
                "key": "claude",
                "display_name": "Claude Code",
                "last_cue_type": "holding",
                "seconds_since_cue": 4.0,
                "quiet_notified": False,
            }
        ]
        assert snapshot["process"] == {"pid": 42, "idle_notified": False, "exit_notified": False}
