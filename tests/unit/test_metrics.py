from referral_engine.core.metrics import normalize_endpoint


def test_addresses_and_ids_collapsed():
    address = "0x" + "Ab" * 20
    assert normalize_endpoint(f"/api/referral/{address}/bonus") == "/api/referral/{address}/bonus"
    assert normalize_endpoint("/api/admin/referral/periods/42/activate") == "/api/admin/referral/periods/{id}/activate"
    assert normalize_endpoint("/api/referral/leaderboard/7") == "/api/referral/leaderboard/{id}"


def test_static_paths_unchanged():
    assert normalize_endpoint("/api/referral/active-period") == "/api/referral/active-period"
