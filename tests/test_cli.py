import sys

import pytest

import filecrypt
from filecrypt import FileCryptError, default_key_path, main, read_text, run, write_text


def test_cli_encrypt_then_decrypt(work_dir, capsys):
    in_file = work_dir / "input.json"
    encrypted = work_dir / "encrypted"
    out_file = work_dir / "decrypted.json"
    write_text(in_file, '{"a":1}')

    assert main(["--file", str(in_file), "--out", str(encrypted), "--password", "correct horse battery staple"]) == 0
    assert "Key written to" in capsys.readouterr().out
    key_file = default_key_path(in_file)
    assert key_file.exists()

    assert main(["--decrypt", "--file", str(encrypted), "--out", str(out_file), "--keyfile", str(key_file)]) == 0
    assert read_text(out_file) == '{"a":1}'


def test_cli_aes_128(work_dir):
    in_file = work_dir / "in.txt"
    key_file = work_dir / "in.k"
    write_text(in_file, "short key")
    main(["--encrypt", "--cipher", "aes-128-cbc", "--file", str(in_file), "--out", str(work_dir / "in.enc"),
          "--keyfile", str(key_file), "--password", "pw"])
    assert len(read_text(key_file)) == 32

    main(["--decrypt", "--cipher", "aes-128-cbc", "--file", str(work_dir / "in.enc"),
          "--out", str(work_dir / "out.txt"), "--keyfile", str(key_file)])
    assert read_text(work_dir / "out.txt") == "short key"


def test_cli_prompts_for_password(work_dir, monkeypatch):
    in_file = work_dir / "in.txt"
    write_text(in_file, "prompted")
    monkeypatch.setattr(filecrypt, "getpass", lambda prompt: "typed in")
    assert main(["--file", str(in_file), "--out", str(work_dir / "in.enc")]) == 0
    assert default_key_path(in_file).exists()


def test_cli_refuses_empty_password(work_dir, monkeypatch):
    in_file = work_dir / "in.txt"
    write_text(in_file, "text")
    monkeypatch.setattr(filecrypt, "getpass", lambda prompt: "")
    with pytest.raises(FileCryptError, match="Empty password"):
        main(["--file", str(in_file), "--out", str(work_dir / "in.enc")])


def test_cli_decrypt_requires_keyfile(work_dir):
    with pytest.raises(FileCryptError, match="--keyfile"):
        main(["--decrypt", "--file", str(work_dir / "x.enc"), "--out", str(work_dir / "x.txt")])


def test_cli_decrypt_rejects_password(work_dir):
    with pytest.raises(FileCryptError, match="encrypt-only"):
        main(["--decrypt", "--file", "x.enc", "--out", "x.txt", "--keyfile", "x.key", "--password", "pw"])


def test_cli_unknown_cipher_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        main(["--cipher", "rot13", "--file", "a", "--out", "b"])
    assert exc.value.code == 2


def test_run_reports_errors(work_dir, monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", [
        "filecrypt", "--decrypt",
        "--file", str(work_dir / "missing.enc"),
        "--out", str(work_dir / "out.txt"),
        "--keyfile", str(work_dir / "missing.key"),
    ])
    with pytest.raises(SystemExit) as exc:
        run()
    assert exc.value.code == 2
    assert capsys.readouterr().err.startswith("Error: File not found")
