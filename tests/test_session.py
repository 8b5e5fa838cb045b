"""Tests for the session orchestrator."""

import pytest

from ssh_tunnels.common.exceptions import (
    ConnectFailedError,
    ForwardRejectedError,
    InvalidRemoteSocketError,
    MissingArgumentError,
)
from ssh_tunnels.reconciler import HostState


def remote_strings(records):
    return [str(r.remote_socket) for r in records]


class TestAdd:
    """Test adding tunnels."""

    def test_single_socket_with_label(self, orchestrator, registry, channels):
        report = orchestrator.add("bastion", ["127.0.0.1:8080:web"])

        assert len(report.records) == 1
        record = registry.find_by_local_port(4000)
        assert record.to_line() == "4000\t127.0.0.1:8080\tbastion\tweb"
        assert channels.forwards["bastion"] == [(4000, record.remote_socket)]
        assert len(orchestrator.list_tunnels().records) == 1

    def test_label_with_unicode_line_separator(self, orchestrator, registry):
        orchestrator.add("bastion", ["127.0.0.1:8080:web\u2028x"])

        report = orchestrator.list_tunnels()

        assert [r.label for r in report.records] == ["web\u2028x"]
        assert registry.find_by_local_port(4000).label == "web\u2028x"

    def test_skips_externally_bound_port(self, orchestrator, listening):
        listening.add(4000)

        report = orchestrator.add("bastion", ["127.0.0.1:8080", "10.0.0.1:9090"])

        assert [r.local_port for r in report.records] == [4001, 4002]
        assert remote_strings(report.records) == ["127.0.0.1:8080", "10.0.0.1:9090"]

    def test_explicit_start_port(self, orchestrator):
        report = orchestrator.add("bastion", ["db:5432"], start_port=5432)
        assert report.records[0].local_port == 5432

    def test_does_not_reuse_ports_recorded_for_other_hosts(self, orchestrator):
        orchestrator.add("alpha", ["a:1"])
        report = orchestrator.add("beta", ["b:1"])

        assert report.records[0].local_port == 4001

    def test_reuses_existing_channel(self, orchestrator, channels):
        orchestrator.add("bastion", ["a:1"])
        orchestrator.add("bastion", ["b:2"])

        assert channels.calls.count(("ensure", "bastion")) == 2
        assert len(channels.forwards["bastion"]) == 2

    def test_missing_arguments(self, orchestrator, channels):
        with pytest.raises(MissingArgumentError):
            orchestrator.add("bastion", [])
        with pytest.raises(MissingArgumentError):
            orchestrator.add("", ["a:1"])
        assert channels.calls == []

    def test_bad_host_or_start_port_rejected(self, orchestrator, channels):
        from ssh_tunnels.common.exceptions import InvalidArgumentError

        with pytest.raises(InvalidArgumentError):
            orchestrator.add("bad host", ["a:1"])
        with pytest.raises(InvalidArgumentError):
            orchestrator.add("bastion", ["a:1"], start_port=0)
        assert channels.calls == []

    def test_bad_socket_rejected_before_side_effects(self, orchestrator, channels):
        with pytest.raises(InvalidRemoteSocketError):
            orchestrator.add("bastion", ["a:1", "nonsense"])
        assert channels.calls == []

    def test_connect_failure_is_fatal(self, orchestrator, registry, channels):
        channels.fail_connect.add("bastion")

        with pytest.raises(ConnectFailedError):
            orchestrator.add("bastion", ["a:1"])
        assert registry.list_all() == []

    def test_rejected_forward_rolls_back_batch(self, orchestrator, registry, channels):
        channels.reject_ports.add(4001)

        with pytest.raises(ForwardRejectedError):
            orchestrator.add("bastion", ["a:1", "b:2", "c:3"])

        assert registry.list_all() == []
        assert ("cancel", "bastion", 4000) in channels.calls
        # host had nothing before the batch, so the channel is closed too
        assert not channels.has_handle("bastion")

    def test_rejected_forward_keeps_existing_tunnels(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        channels.reject_ports.add(4002)

        with pytest.raises(ForwardRejectedError):
            orchestrator.add("bastion", ["b:2", "c:3"])

        assert [r.local_port for r in registry.list_all()] == [4000]
        assert channels.is_alive("bastion")
        assert channels.forwards["bastion"][0][0] == 4000

    def test_stale_host_reconciled_before_add(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        channels.kill_connection("bastion")

        report = orchestrator.add("bastion", ["b:2"])

        assert [c.state for c in report.cleanups] == [HostState.STALE_CONNECTION_DEAD]
        assert [r.local_port for r in registry.list_all()] == [4000]
        assert remote_strings(registry.list_all()) == ["b:2"]


class TestRemove:
    """Test removing tunnels by local port."""

    def test_remove_last_tunnel_tears_down_host(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"], start_port=4001)

        report = orchestrator.remove([4001])

        assert [r.local_port for r in report.records] == [4001]
        assert not registry.has_host("bastion")
        assert not channels.has_handle("bastion")
        assert ("cancel", "bastion", 4001) in channels.calls
        assert "Closed connection to bastion" in report.messages

    def test_remove_one_of_several_keeps_host(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1", "b:2"])

        orchestrator.remove([4000])

        assert [r.local_port for r in registry.list_all()] == [4001]
        assert channels.is_alive("bastion")

    def test_unknown_port_is_a_warning(self, orchestrator, registry):
        orchestrator.add("bastion", ["a:1", "b:2"])

        report = orchestrator.remove([4999, 4001])

        assert report.warnings == ["No tunnel found on local port 4999"]
        assert [r.local_port for r in registry.list_all()] == [4000]

    def test_failed_cancel_keeps_record(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        channels.fail_cancel.add(4000)

        report = orchestrator.remove([4000])

        assert len(report.warnings) == 1
        assert registry.find_by_local_port(4000) is not None

    def test_requires_ports(self, orchestrator):
        with pytest.raises(MissingArgumentError):
            orchestrator.remove([])


class TestKill:
    """Test killing host sessions."""

    def test_kill_tears_down_everything(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1", "b:2"])
        orchestrator.add("jump", ["c:3"])

        report = orchestrator.kill(["bastion"])

        assert len(report.records) == 2
        assert registry.hosts() == ["jump"]
        assert channels.handles() == ["jump"]

    def test_kill_dead_host_is_not_an_error(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        channels.kill_connection("bastion")

        report = orchestrator.kill(["bastion"])

        assert report.warnings == []
        assert report.cleanups == []
        assert "Killed connection to bastion" in report.messages
        assert not registry.has_host("bastion")

    def test_kill_unknown_host(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        calls_before = list(channels.calls)

        report = orchestrator.kill(["ghost"])

        assert report.warnings == ["Unable to find connection to kill: ghost"]
        assert registry.hosts() == ["bastion"]
        assert channels.calls == calls_before

    def test_kill_orphan_channel(self, orchestrator, channels):
        channels.ensure("bastion")

        report = orchestrator.kill(["bastion"])

        assert report.warnings == []
        assert not channels.has_handle("bastion")


class TestList:
    """Test listing with reconciliation."""

    def test_dead_connection_cleaned_before_listing(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        orchestrator.add("jump", ["b:2"])
        channels.kill_connection("bastion")

        report = orchestrator.list_tunnels()

        assert [c.host_id for c in report.cleanups] == ["bastion"]
        assert not registry.has_host("bastion")
        assert not channels.has_handle("bastion")
        assert [r.owner_host_id for r in report.records] == ["jump"]

    def test_empty(self, orchestrator):
        report = orchestrator.list_tunnels()
        assert report.records == []
        assert report.cleanups == []


class TestSaveAndLoad:
    """Test profiles through the orchestrator."""

    def test_save_selected_ports(self, orchestrator, profiles):
        orchestrator.add("bastion", ["a:1:web", "b:2", "c:3"])

        report = orchestrator.save("dev", [4002, 4000])

        profile = profiles.load("dev")
        assert [r.local_port for r in profile.records] == [4002, 4000]
        assert report.records == list(profile.records)

    def test_save_skips_unknown_ports(self, orchestrator, profiles):
        orchestrator.add("bastion", ["a:1"])

        report = orchestrator.save("dev", [4000, 4999])

        assert report.warnings == ["No tunnel found on local port 4999, skipping"]
        assert len(profiles.load("dev").records) == 1

    def test_save_nothing(self, orchestrator, profiles):
        report = orchestrator.save("dev", [4999])

        assert not profiles.exists("dev")
        assert report.warnings[-1] == "Nothing to save to profile 'dev'"

    def test_save_existing_requires_consent(self, orchestrator, profiles):
        orchestrator.add("bastion", ["a:1", "b:2"])
        orchestrator.save("dev", [4000])

        declined = orchestrator.save("dev", [4001], confirm_overwrite=lambda name: False)
        assert declined.warnings == ["Profile 'dev' exists, not overwritten"]
        assert [r.local_port for r in profiles.load("dev").records] == [4000]

        unattended = orchestrator.save("dev", [4001])
        assert unattended.warnings == ["Profile 'dev' exists, not overwritten"]

        asked = []
        orchestrator.save("dev", [4001], confirm_overwrite=lambda name: asked.append(name) or True)
        assert asked == ["dev"]
        assert [r.local_port for r in profiles.load("dev").records] == [4001]

    def test_round_trip(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["127.0.0.1:8080:web", "10.0.0.1:9090"])
        orchestrator.add("jump", ["db:5432:pg"])
        before = registry.list_all()
        orchestrator.save("all", [4000, 4001, 4002])
        orchestrator.kill(["bastion", "jump"])
        assert registry.list_all() == []

        report = orchestrator.load(["all"])

        assert report.warnings == []
        after = registry.list_all()
        assert sorted(after, key=lambda r: r.local_port) == sorted(
            before, key=lambda r: r.local_port
        )
        assert channels.is_alive("bastion")
        assert channels.is_alive("jump")

    def test_load_skips_bound_ports(self, orchestrator, registry, listening):
        orchestrator.add("bastion", ["a:1", "b:2"])
        orchestrator.save("dev", [4000, 4001])
        orchestrator.kill(["bastion"])
        listening.add(4000)

        report = orchestrator.load(["dev"])

        assert len(report.warnings) == 1
        assert "4000" in report.warnings[0]
        assert [r.local_port for r in registry.list_all()] == [4001]

    def test_load_unknown_profile_continues(self, orchestrator, registry):
        orchestrator.add("bastion", ["a:1"])
        orchestrator.save("dev", [4000])
        orchestrator.kill(["bastion"])

        report = orchestrator.load(["missing", "dev"])

        assert report.warnings == ["Profile 'missing' not found"]
        assert len(registry.list_all()) == 1

    def test_rejected_forward_aborts_only_that_profile(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1", "b:2"])
        orchestrator.add("jump", ["c:3"])
        orchestrator.save("first", [4000, 4001])
        orchestrator.save("second", [4002])
        orchestrator.kill(["bastion", "jump"])
        channels.reject_ports.add(4001)

        report = orchestrator.load(["first", "second"])

        assert len(report.warnings) == 1
        assert "Aborted loading profile 'first'" in report.warnings[0]
        assert [r.local_port for r in registry.list_all()] == [4002]
        assert ("cancel", "bastion", 4000) in channels.calls
        assert not channels.has_handle("bastion")

    def test_connect_failure_aborts_load(self, orchestrator, registry, channels):
        orchestrator.add("bastion", ["a:1"])
        orchestrator.save("dev", [4000])
        orchestrator.kill(["bastion"])
        channels.fail_connect.add("bastion")

        with pytest.raises(ConnectFailedError):
            orchestrator.load(["dev"])
        assert registry.list_all() == []

    def test_load_requires_names(self, orchestrator):
        with pytest.raises(MissingArgumentError):
            orchestrator.load([])

    def test_save_requires_name(self, orchestrator):
        with pytest.raises(MissingArgumentError):
            orchestrator.save("  ", [4000])


class TestFromSettings:
    """Test wiring the orchestrator to the on-disk layout."""

    def test_builds_file_backed_components(self, settings):
        from ssh_tunnels.channel import SSHControlChannel
        from ssh_tunnels.locking import HostLock
        from ssh_tunnels.registry import FileTunnelRegistry
        from ssh_tunnels.session import SessionOrchestrator

        orchestrator = SessionOrchestrator.from_settings(settings)

        assert isinstance(orchestrator.registry, FileTunnelRegistry)
        assert isinstance(orchestrator.channels, SSHControlChannel)
        assert isinstance(orchestrator.lock, HostLock)
        assert orchestrator.default_start_port == settings.default_start_port
        assert settings.registry_dir.is_dir()
        assert settings.locks_dir.is_dir()

    def test_add_under_host_lock(self, settings, registry, channels, allocator, profiles):
        from ssh_tunnels.locking import HostLock
        from ssh_tunnels.session import SessionOrchestrator

        orchestrator = SessionOrchestrator(
            registry=registry,
            channels=channels,
            allocator=allocator,
            profiles=profiles,
            default_start_port=4500,
            lock=HostLock(settings.locks_dir, timeout=0.0),
        )

        orchestrator.add("bastion", ["a:1"])
        orchestrator.remove([4500])

        assert registry.list_all() == []
        assert (settings.locks_dir / "bastion.lock").exists()
