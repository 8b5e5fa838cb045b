"""Tests for the profile store."""

import pytest

from ssh_tunnels.common.exceptions import (
    CorruptRecordError,
    InvalidArgumentError,
    ProfileNotFoundError,
)
from ssh_tunnels.models import Profile, TunnelRecord
from ssh_tunnels.profiles import ProfileStore


@pytest.fixture
def store(tmp_path):
    return ProfileStore(tmp_path / "profiles")


def records(*lines):
    return tuple(TunnelRecord.from_line(line) for line in lines)


class TestProfileStore:
    """Test saving and loading named profiles."""

    def test_save_and_load_preserves_order(self, store):
        profile = Profile(
            name="dev",
            records=records("4002\tc:3\tjump\t", "4000\ta:1\tbastion\tweb"),
        )

        path = store.save(profile)

        assert path.name == "dev"
        assert store.load("dev") == profile

    def test_same_format_as_registry(self, store, tmp_path):
        store.save(Profile(name="dev", records=records("4000\ta:1\tbastion\tweb")))
        assert (tmp_path / "profiles" / "dev").read_text() == "4000\ta:1\tbastion\tweb\n"

    def test_save_replaces_existing(self, store):
        store.save(Profile(name="dev", records=records("4000\ta:1\tbastion\t")))
        store.save(Profile(name="dev", records=records("4001\tb:2\tbastion\t")))

        assert [r.local_port for r in store.load("dev").records] == [4001]

    def test_load_missing(self, store):
        with pytest.raises(ProfileNotFoundError, match="'nope'"):
            store.load("nope")

    def test_load_corrupt(self, store, tmp_path):
        (tmp_path / "profiles").mkdir()
        (tmp_path / "profiles" / "bad").write_text("4000\ta:1\n")

        with pytest.raises(CorruptRecordError):
            store.load("bad")

    def test_names(self, store):
        assert store.names() == []
        store.save(Profile(name="zeta", records=()))
        store.save(Profile(name="alpha", records=()))

        assert store.names() == ["alpha", "zeta"]
        assert store.exists("alpha")
        assert not store.exists("beta")

    def test_unsafe_names_stay_inside_directory(self, store, tmp_path):
        path = store.save(Profile(name="../escape", records=()))
        assert path.parent == tmp_path / "profiles"

    @pytest.mark.parametrize("name", [".", "..", " "])
    def test_dot_and_blank_names_rejected(self, store, name):
        with pytest.raises(InvalidArgumentError):
            store.exists(name)
