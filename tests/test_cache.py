import redis

from services import cache, inventory_service, inventory_store


class _BrokenRedis:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")

        return _fail


def test_set_get_and_stats():
    assert cache.get_json("k") is None
    assert cache.set_json("k", {"a": 1}, 60)
    assert cache.get_json("k") == {"a": 1}

    stats = cache.get_cache_stats()
    assert (stats["hits"], stats["misses"], stats["writes"]) == (1, 1, 1)
    assert stats["hit_rate"] == 50.0


def test_values_expire_after_ttl(fake_redis):
    cache.set_json("k", [1, 2], 60)
    fake_redis.now = 59
    assert cache.get_json("k") == [1, 2]
    assert cache.ttl("k") == 1
    fake_redis.now = 60
    assert cache.get_json("k") is None
    assert cache.ttl("k") is None


def test_clear_cache_by_pattern():
    cache.set_json("dashboard:metrics", {}, 60)
    cache.set_json("dashboard:trends:30", {}, 60)
    cache.set_json("inventory:full", {"items": []}, 60)

    assert cache.invalidate_dashboard() == 2
    assert cache.get_json("inventory:full") == {"items": []}


def test_redis_outage_is_soft(monkeypatch):
    monkeypatch.setattr(cache, "_client", _BrokenRedis())

    assert cache.get_json("k") is None
    assert cache.set_json("k", 1, 60) is False
    assert cache.delete("k") == 0
    assert cache.clear_cache("*") == 0
    assert cache.ping() is False
    assert cache.get_cache_stats()["errors"] == 5


def test_inventory_snapshot_metadata(fake_redis):
    cache.set_inventory_snapshot([{"sku": "A"}], source="sync:full")

    status = cache.cache_status()
    assert status["connected"] is True
    assert status["metadata"]["total_items"] == 1
    assert status["metadata"]["source"] == "sync:full"
    assert status["inventory_ttl_seconds"] == cache.INVENTORY_TTL


def test_inventory_reads_hit_cache_after_first_load(tmp_db, fake_redis):
    inventory_store.create_item({"sku": "A", "product_name": "Alpha", "current_stock": 5, "sales_velocity": 1})

    items, first = inventory_service.load_inventory()
    _, second = inventory_service.load_inventory()
    assert (first, second) == ("miss", "hit")
    assert items[0]["stock_status_level"] == "critical"

    fake_redis.now = cache.INVENTORY_TTL
    _, after_expiry = inventory_service.load_inventory()
    assert after_expiry == "miss"


def test_inventory_reads_fall_back_to_database_when_redis_is_down(tmp_db, monkeypatch):
    inventory_store.create_item({"sku": "A", "product_name": "Alpha", "current_stock": 5})
    monkeypatch.setattr(cache, "_client", _BrokenRedis())

    result = inventory_service.list_inventory()

    assert result["cacheStatus"] == "miss"
    assert [i["sku"] for i in result["inventory"]] == ["A"]
