from schoollib.utils import cache as cache_module
from schoollib.utils.cache import CacheKeys, TTLCache


def test_keys_are_namespaced_per_entity():
    assert CacheKeys.loan(7) == 'loan:7'
    assert CacheKeys.book('7') == 'book:7'
    assert CacheKeys.rule(7) == 'rule:7'


def test_entries_expire_after_ttl(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(cache_module.time, 'monotonic', lambda: clock[0])
    c = TTLCache(default_ttl=600)
    c.set('loan:1', {'status': 'active'})
    clock[0] += 599
    assert c.get('loan:1') == {'status': 'active'}
    clock[0] += 2
    assert c.get('loan:1') is None
    assert len(c) == 0


def test_values_are_copied():
    c = TTLCache()
    value = {'status': 'active'}
    c.set('loan:1', value)
    value['status'] = 'returned'
    assert c.get('loan:1')['status'] == 'active'
    c.get('loan:1')['status'] = 'overdue'
    assert c.get('loan:1')['status'] == 'active'


def test_delete_counts_removed_keys_and_oldest_are_evicted():
    c = TTLCache(default_ttl=600, max_entries=2)
    c.set('a', 1, ttl=10)
    c.set('b', 2, ttl=20)
    c.set('c', 3, ttl=30)
    assert c.get('a') is None
    assert len(c) == 2
    assert c.delete('b', 'missing') == 1
    c.set('d', 4, ttl=0)
    assert c.get('d') is None
