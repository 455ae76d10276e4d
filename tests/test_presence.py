from chat_gateway.presence import PresenceRegistry


def test_register_and_lookup():
    presence = PresenceRegistry()
    assert presence.register("C", "conn_1") is None
    assert presence.lookup("C") == "conn_1"
    assert "C" in presence
    assert len(presence) == 1


def test_last_registration_wins():
    presence = PresenceRegistry()
    presence.register("C", "conn_1")
    previous = presence.register("C", "conn_2")
    assert previous == "conn_1"
    assert presence.lookup("C") == "conn_2"
    assert len(presence) == 1


def test_stale_connection_does_not_evict_newer_one():
    presence = PresenceRegistry()
    presence.register("C", "conn_1")
    presence.register("C", "conn_2")

    assert presence.deregister("C", "conn_1") is False
    assert presence.lookup("C") == "conn_2"

    assert presence.deregister("C", "conn_2") is True
    assert presence.lookup("C") is None


def test_unconditional_deregister_and_clear():
    presence = PresenceRegistry()
    presence.register("C", "conn_1")
    presence.register("P", "conn_2")

    assert presence.deregister("C") is True
    assert presence.deregister("C") is False
    assert presence.snapshot() == {"P": "conn_2"}

    presence.clear()
    assert len(presence) == 0
    assert presence.lookup("P") is None
