from engine import runtime


def test_runtime_reports_cli_availability(monkeypatch) -> None:
    monkeypatch.setattr(runtime.shutil, "which", lambda name: f"/usr/local/bin/{name}")

    info = runtime.get_runtime_info("yt-dlp")

    assert info["yt_dlp_cli"] == "/usr/local/bin/yt-dlp"
    assert info["cli_fallback_available"] is True
    assert info["yt_dlp_version"]


def test_runtime_without_cli(monkeypatch) -> None:
    monkeypatch.setattr(runtime.shutil, "which", lambda name: None)

    info = runtime.get_runtime_info("missing-binary")

    assert info["yt_dlp_cli"] is None
    assert info["cli_fallback_available"] is False
