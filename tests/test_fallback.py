from homesync.fallback import LocalFallbackCache
from homesync.models import DeviceRecord


def _device(device_id: str) -> DeviceRecord:
    return DeviceRecord.from_store(device_id, {"name": device_id.title(), "type": "fan", "room": "Hall"})


def test_save_and_load(tmp_path):
    cache = LocalFallbackCache(tmp_path / "nested" / "devices.json")

    assert cache.save([_device("b"), _device("a")]) is True

    loaded = cache.load()
    assert [d.id for d in loaded] == ["b", "a"]
    assert loaded[0] == _device("b")
    assert cache.device_ids() == ["a", "b"]
    assert cache.is_populated()


def test_missing_file_is_empty(tmp_path):
    cache = LocalFallbackCache(tmp_path / "absent.json")

    assert cache.load() == []
    assert not cache.is_populated()
    assert cache.clear() == 0


def test_corrupt_file_is_empty(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text("{not json")

    assert LocalFallbackCache(path).load() == []


def test_clear_removes_file(tmp_path):
    cache = LocalFallbackCache(tmp_path / "devices.json")
    cache.save([_device("a")])

    assert cache.clear() == 1
    assert not cache.path.exists()


def test_save_failure_returns_false(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")

    assert LocalFallbackCache(blocker / "devices.json").save([_device("a")]) is False
