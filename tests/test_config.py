import argparse

import pytest
from gg import CompileError, ConfigError, config_path, load_config, main, parse_args, validate_flags


def write_config(home, text):
    path = home / ".config" / "gg" / "config.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(text)
    return path


def test_config_path_in_home(home):
    assert config_path() == str(home / ".config" / "gg" / "config.yaml")


def test_load_config_missing_file(tmp_path):
    assert load_config(str(tmp_path / "missing.yaml")) == {}


def test_load_config_empty_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(str(path)) == {}


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text('colour: true\ngroup: loo\ntime: "15:04:05"\nunknown: 1\n')
    assert load_config(str(path)) == {"colour": True, "group": "loo", "time": "15:04:05"}


@pytest.mark.parametrize(
    "text, message",
    [
        ("colour: [true\n", "cannot read config file"),
        ("- colour\n- group\n", "must contain a mapping"),
        ("colour: 1\n", "colour must be of type bool"),
        # YAML reads an unquoted 15:04:05 as a base 60 integer
        ("time: 15:04:05\n", "time must be of type str"),
        ("group: [loo]\n", "group must be of type str"),
    ],
)
def test_load_config_errors(tmp_path, text, message):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    with pytest.raises(ConfigError, match=message):
        load_config(str(path))


def flags(selects=(), fields=(), group=""):
    return argparse.Namespace(selects=list(selects), fields=list(fields), group=group)


@pytest.mark.parametrize(
    "args, message",
    [
        (flags(fields=[""]), "-f/--field must not be empty"),
        (flags(fields=["me"]), "-f/--field must at least be 3 characters long"),
        (flags(fields=["mes("]), "invalid regular expression"),
        (flags(group="lo"), "-g/--group must at least be 3 characters long"),
        (flags(group="loo("), "invalid regular expression"),
        (flags(selects=["obj"]), "-s/--select must have format key:val"),
        (flags(selects=["obj:qihx8:x"]), "-s/--select must have format key:val"),
        (flags(selects=["ob:qihx8"]), "key-val must at least be 3 characters long"),
        (flags(selects=["obj:qi"]), "key-val must at least be 3 characters long"),
        (flags(selects=["obj:qih[x8"]), "invalid regular expression"),
    ],
)
def test_validate_flags_errors(args, message):
    with pytest.raises(CompileError, match=message):
        validate_flags(args)


def test_validate_flags_accepts_valid_flags():
    validate_flags(flags(selects=["obj:qihx8", "res:dra.*"], fields=["tim", "mes"], group="loo"))
    validate_flags(flags())


def test_parse_args_defaults(home):
    args = parse_args([])
    assert args.files == []
    assert args.selects == []
    assert args.fields == []
    assert args.group == ""
    assert args.output == "json"
    assert args.colour is False
    assert args.time == ""
    assert args.debug is False


def test_parse_args_flattens_comma_lists(home):
    args = parse_args(["-s", "obj:qihx8,res:dra", "--select", "lev:err", "-f", "tim,mes", "-f", "loo"])
    assert args.selects == ["obj:qihx8", "res:dra", "lev:err"]
    assert args.fields == ["tim", "mes", "loo"]


def test_parse_args_files(home):
    args = parse_args(["-o", "text", "a.json", "-", "b.json.gz"])
    assert args.files == ["a.json", "-", "b.json.gz"]
    assert args.output == "text"


def test_parse_args_rejects_unknown_output(home):
    with pytest.raises(SystemExit):
        parse_args(["-o", "yaml"])


def test_parse_args_uses_config_defaults(home):
    write_config(home, 'colour: true\ngroup: loo\ntime: "15:04:05"\n')
    args = parse_args([])
    assert args.colour is True
    assert args.group == "loo"
    assert args.time == "15:04:05"


def test_parse_args_flags_override_config(home):
    write_config(home, 'colour: true\ngroup: loo\ntime: "15:04:05"\n')
    args = parse_args(["-g", "res", "-t", "15:04", "--no-colour"])
    assert args.colour is False
    assert args.group == "res"
    assert args.time == "15:04"


def test_parse_args_no_color_environment(home, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    assert parse_args(["-c"]).colour is False


def test_parse_args_invalid_config(home):
    write_config(home, "time: 15:04:05\n")
    with pytest.raises(ConfigError):
        parse_args([])


def test_main_reports_errors(home, basic_logfile, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["-s", "obj", str(basic_logfile)])
    assert excinfo.value.code == 1
    assert capsys.readouterr().err == "gg: -s/--select must have format key:val\n"


def test_main_missing_file(home, tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main([str(tmp_path / "missing.json")])
    assert excinfo.value.code == 1
    assert capsys.readouterr().err.startswith("gg: cannot open")


def test_main_reads_files(home, basic_logfile, capsys):
    main(["-f", "res", "-o", "text", "-s", "obj:qihx8", str(basic_logfile), str(basic_logfile)])
    assert capsys.readouterr().out == "drainer\naccountid\ndrainer\nasgstatus\n" * 2
