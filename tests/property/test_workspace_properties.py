from __future__ import annotations

import re
from datetime import timezone

from hypothesis import assume, given
from hypothesis import strategies as st

from agentvm.provisioning.network import choose_subnet
from agentvm.workspace.registry import parse_workspace_listing, validate_workspace_name, workspace_name

_NAME_CHARS = st.characters(min_codepoint=33, max_codepoint=126)
_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


@given(st.text(alphabet=_NAME_CHARS, max_size=20), st.text(alphabet=_NAME_CHARS, max_size=40))
def test_workspace_name_is_a_safe_single_path_component(repo: str, branch: str) -> None:
    name = workspace_name(repo, branch)

    assert _SAFE_NAME.match(name)
    assert validate_workspace_name(name) == name


@given(st.text(alphabet=_NAME_CHARS, max_size=20), st.text(alphabet=_NAME_CHARS, max_size=40))
def test_workspace_name_is_deterministic(repo: str, branch: str) -> None:
    assert workspace_name(repo, branch) == workspace_name(repo, branch)


@given(
    st.tuples(st.text(alphabet=_NAME_CHARS, max_size=20), st.text(alphabet=_NAME_CHARS, max_size=40)),
    st.tuples(st.text(alphabet=_NAME_CHARS, max_size=20), st.text(alphabet=_NAME_CHARS, max_size=40)),
)
def test_distinct_repository_branch_pairs_get_distinct_names(
    first: tuple[str, str], second: tuple[str, str]
) -> None:
    assume(first != second)

    assert workspace_name(*first) != workspace_name(*second)


@given(st.text(alphabet="ab-", max_size=6), st.text(alphabet="ab-", max_size=6))
def test_moving_the_separator_between_repository_and_branch_changes_the_name(repo: str, branch: str) -> None:
    assume(branch)

    assert workspace_name(repo, branch) != workspace_name(f"{repo}-{branch[0]}", branch[1:])


@given(
    st.lists(
        st.tuples(
            st.text(alphabet=st.characters(min_codepoint=33, max_codepoint=126), min_size=1, max_size=15),
            st.integers(min_value=0, max_value=4_000_000_000),
        ),
        max_size=25,
    )
)
def test_parse_listing_returns_sorted_unique_names(rows: list[tuple[str, int]]) -> None:
    raw = "".join(f"{name}\t{stamp}\n" for name, stamp in rows)

    entries = parse_workspace_listing(raw)
    names = [entry["name"] for entry in entries]

    assert names == sorted({name for name, _ in rows})
    assert all(entry["last_modified"].tzinfo == timezone.utc for entry in entries)


@given(st.lists(st.text(max_size=40), max_size=30))
def test_parse_listing_never_raises_on_noise(lines: list[str]) -> None:
    parse_workspace_listing("\n".join(lines))


@given(st.integers(min_value=0, max_value=255), st.integers(min_value=1, max_value=254))
def test_chosen_subnet_never_matches_host_network(octet: int, host: int) -> None:
    output = f"    inet 192.168.{octet}.{host}/24 brd 192.168.{octet}.255 scope global eth0\n"

    chosen = choose_subnet(output)

    assert 0 <= chosen <= 255
    assert chosen != octet
