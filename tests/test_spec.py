import pytest

from arbor.spec import normalize_git_url, parse_arg, parse_spec, valid_package_name


@pytest.mark.parametrize("raw,kind", [
    ("^1.0.0", "range"),
    ("1.2.3", "version"),
    ("", "range"),
    ("latest", "tag"),
    ("file:vendor/x.tgz", "file"),
    ("file:../sibling", "directory"),
    ("./local", "directory"),
    ("github:user/repo", "git"),
    ("user/repo#v1.0.0", "git"),
    ("git+ssh://git@example.com/a/b.git", "git"),
    ("https://example.com/a-1.0.0.tgz", "remote"),
])
def test_parse_spec_types(raw, kind):
    assert parse_spec("a", raw, "/p/q").type == kind


def test_directory_specs_resolve_against_where():
    spec = parse_spec("a", "file:../sibling", "/p/q")
    assert spec.fetch_spec == "/p/sibling"


def test_alias():
    spec = parse_spec("a", "npm:b@^2.0.0")
    assert spec.type == "alias"
    assert spec.registry
    assert spec.sub_spec.name == "b"
    assert spec.sub_spec.fetch_spec == "^2.0.0"
    with pytest.raises(ValueError):
        parse_spec("a", "npm:file:../x")


def test_git_semver_range():
    spec = parse_spec("a", "github:user/repo#semver:^1.2")
    assert spec.git_range == "^1.2"
    assert spec.git_committish is None


def test_parse_arg():
    scoped = parse_arg("@scope/name@^1")
    assert (scoped.name, scoped.raw_spec, scoped.type) == ("@scope/name", "^1", "range")
    bare = parse_arg("left-pad")
    assert (bare.name, bare.raw_spec) == ("left-pad", "*")
    path = parse_arg("./pkgs/x", "/p")
    assert path.name is None and path.type == "directory"


def test_git_url_normalization():
    expected = "github.com/user/repo"
    assert normalize_git_url("git+https://github.com/User/Repo.git") == expected
    assert normalize_git_url("github:user/repo#main") == expected
    assert normalize_git_url("git@github.com:user/repo.git") == expected
    assert normalize_git_url("user/repo") == expected


def test_valid_package_name():
    assert valid_package_name("@scope/left-pad")
    assert not valid_package_name("Has Space")
