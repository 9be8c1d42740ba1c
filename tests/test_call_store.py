import threading

from siploadtrace.services.call_store import CallDelta, CallRecordStore, CallSeed


def test_get_or_create_seeds_once() -> None:
    store = CallRecordStore()
    first = store.get_or_create("call-1", CallSeed("sip.example.com", "203.0.113.1"))
    second = store.get_or_create("call-1", CallSeed("other.example.com", "198.51.100.1"))

    assert first.destination_domain == "sip.example.com"
    assert second.destination_domain == "sip.example.com"
    assert second.resolved_destination_ip == "203.0.113.1"
    assert first.call_time == second.call_time
    assert len(store) == 1


def test_merge_is_order_independent_and_idempotent() -> None:
    delta_a = CallDelta(remote_ip="203.0.113.3", contact_ips=["203.0.113.2"])
    delta_b = CallDelta(via_header_ips=["10.0.0.1", "203.0.113.3"], sdp_media_ips=["198.51.100.7"])

    store_ab = CallRecordStore()
    store_ab.get_or_create("c")
    store_ab.merge("c", delta_a)
    store_ab.merge("c", delta_b)

    store_ba = CallRecordStore()
    store_ba.get_or_create("c")
    store_ba.merge("c", delta_b)
    store_ba.merge("c", delta_a)
    store_ba.merge("c", delta_a)

    ab = store_ab.remove("c")
    ba = store_ba.remove("c")
    assert ab is not None and ba is not None
    assert set(ab.all_detected_ips) == set(ba.all_detected_ips) == {
        "203.0.113.3",
        "203.0.113.2",
        "10.0.0.1",
        "198.51.100.7",
    }
    assert len(ba.all_detected_ips) == 4
    # Category lists are evidence trails and keep repeats.
    assert ba.contact_ips == ["203.0.113.2", "203.0.113.2"]


def test_merge_overwrites_scalars_only_with_non_empty_values() -> None:
    store = CallRecordStore()
    store.get_or_create("c")
    store.merge("c", CallDelta(server_header="Asterisk", call_status="Success", response_code="200 OK"))
    store.merge("c", CallDelta(server_header="", user_agent="softphone/1.0"))

    record = store.remove("c")
    assert record is not None
    assert record.server_header == "Asterisk"
    assert record.user_agent == "softphone/1.0"
    assert record.call_status == "Success"
    assert record.response_code == "200 OK"


def test_merge_on_missing_record_is_rejected() -> None:
    store = CallRecordStore()
    assert store.merge("gone", CallDelta(remote_ip="10.0.0.1")) is False
    assert "gone" not in store


def test_add_rtp_ip_records_address_once() -> None:
    store = CallRecordStore()
    store.get_or_create("c")
    assert store.add_rtp_ip("c", "198.51.100.9")
    assert store.add_rtp_ip("c", "198.51.100.9")
    assert not store.add_rtp_ip("missing", "198.51.100.9")

    record = store.remove("c")
    assert record is not None
    assert record.rtp_ips == ["198.51.100.9"]
    assert record.all_detected_ips == ["198.51.100.9"]


def test_remove_detaches_exactly_once() -> None:
    store = CallRecordStore()
    store.get_or_create("c")
    assert store.remove("c") is not None
    assert store.remove("c") is None


def test_snapshot_returns_copies() -> None:
    store = CallRecordStore()
    store.get_or_create("c")
    store.merge("c", CallDelta(remote_ip="10.0.0.1"))

    (key, snap), = store.snapshot()
    snap.all_detected_ips.append("10.9.9.9")

    record = store.remove(key)
    assert record is not None
    assert record.all_detected_ips == ["10.0.0.1"]


def test_concurrent_merges_never_lose_addresses() -> None:
    store = CallRecordStore()
    workers = 8
    per_worker = 50
    barrier = threading.Barrier(workers)

    def worker(idx: int) -> None:
        barrier.wait()
        for n in range(per_worker):
            store.get_or_create("shared")
            store.merge("shared", CallDelta(contact_ips=[f"10.{idx}.{n}.1"], remote_ip="203.0.113.3"))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    record = store.remove("shared")
    assert record is not None
    assert len(record.contact_ips) == workers * per_worker
    assert len(record.all_detected_ips) == workers * per_worker + 1
    assert record.all_detected_ips.count("203.0.113.3") == 1
