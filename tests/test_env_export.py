from __future__ import annotations

from pathlib import Path

import pytest

from pkcs11_harness.env_export import EnvironmentExporter, load_testvars


def test_render_groups_blocks_under_titles() -> None:
    exporter = EnvironmentExporter()
    exporter.add_block({"P11LIB": "/usr/lib/softhsm/libsofthsm2.so"})
    exporter.add_block({"PRIURI": "pkcs11:type=private;id=%00%01"}, title="RSA PKCS11 URIS")

    assert exporter.render() == (
        "export P11LIB=/usr/lib/softhsm/libsofthsm2.so\n"
        "\n"
        "# RSA PKCS11 URIS\n"
        "export PRIURI='pkcs11:type=private;id=%00%01'\n"
    )


def test_none_values_are_not_exported() -> None:
    exporter = EnvironmentExporter()
    block = exporter.add_block({"OPENSSL_CONF": None, "PINVALUE": "12345678"})
    assert block.values == {"PINVALUE": "12345678"}
    assert "OPENSSL_CONF" not in exporter.render()


def test_variable_may_only_be_exported_once() -> None:
    exporter = EnvironmentExporter()
    exporter.add_block({"PRIURI": "a"})
    with pytest.raises(ValueError, match="exported twice"):
        exporter.add_block({"PRIURI": "b"})


@pytest.mark.parametrize("name", ["1ABC", "A-B", "", "A B"])
def test_invalid_names_are_rejected(name: str) -> None:
    with pytest.raises(ValueError, match="Invalid"):
        EnvironmentExporter().add_block({name: "x"})


def test_write_and_load_preserve_awkward_values(tmp_path: Path) -> None:
    exporter = EnvironmentExporter()
    values = {
        "BASEURIWITHPINSOURCE": "pkcs11:id=%00%01?pin-source=file:/tmp/my dir/pinfile.txt",
        "QUOTED": "it's \"quoted\"",
        "EMPTY": "",
    }
    exporter.add_block(values, title="awkward")

    testvars, unsetvars = exporter.write(tmp_path)

    assert testvars.name == "testvars"
    assert load_testvars(testvars) == values
    assert unsetvars.read_text().splitlines() == [f"unset {name}" for name in values]


def test_load_rejects_non_export_lines(tmp_path: Path) -> None:
    path = tmp_path / "testvars"
    path.write_text("export A=1\necho hello\n")
    with pytest.raises(ValueError, match=":2:"):
        load_testvars(path)
