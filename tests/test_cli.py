def test_gateway_mode(app):
    result = app.test_cli_runner().invoke(args=["payments", "gateway-mode"])
    assert result.exit_code == 0
    assert "mode=simulated" in result.output


def test_sync_command(app, orchestrator, make_donation):
    d = make_donation(donation_type="recurring")
    orchestrator.setup_recurring_donation(d, "CST1")

    result = app.test_cli_runner().invoke(args=["payments", "sync", d.id])
    assert result.exit_code == 0
    assert "status=active" in result.output


def test_sync_unknown_donation(app):
    result = app.test_cli_runner().invoke(args=["payments", "sync", "missing"])
    assert result.exit_code != 0
    assert "not found" in result.output
