"""
Tests for the anchor command line.

Commands run against the fake PDS through a patched AnchorContext.create.
"""

from unittest.mock import AsyncMock, patch

import pytest

from dropanchor.app.cli import build_parser, invoke, place_from_args, run_command
from dropanchor.errors import AuthError, AuthFailure
from dropanchor.model.place import ElementType
from dropanchor.model.records import ADDRESS_COLLECTION, CHECKIN_COLLECTION

from conftest import TEST_DID, TEST_HANDLE, TEST_PASSWORD

CHECKIN_ARGS = [
    "checkin",
    "--name",
    "Klimmuur Centraal",
    "--lat",
    "52.3676",
    "--lon",
    "4.9041",
    "--osm-type",
    "way",
    "--osm-id",
    "123456789",
    "--tag",
    "leisure=sports_centre",
    "--tag",
    "addr:city=Amsterdam",
    "--message",
    "Great session",
]


async def run(context, settings, argv):
    with patch("dropanchor.app.cli.AnchorContext") as mock_context_class:
        mock_context_class.create = AsyncMock(return_value=context)
        return await run_command(build_parser().parse_args(argv), settings)


class TestParser:
    """Argument parsing."""

    def test_place_from_args(self):
        args = build_parser().parse_args(CHECKIN_ARGS)
        place = place_from_args(args)

        assert place.name == "Klimmuur Centraal"
        assert place.element_type == ElementType.way
        assert place.element_id == 123456789
        assert place.tags == {"leisure": "sports_centre", "addr:city": "Amsterdam"}

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """Each command against the fake PDS."""

    @pytest.mark.asyncio
    async def test_login_and_whoami(self, context, settings, capsys):
        code = await run(
            context, settings, ["login", TEST_HANDLE, "--password", TEST_PASSWORD]
        )
        assert code == 0
        assert f"Signed in as {TEST_HANDLE} ({TEST_DID})" in capsys.readouterr().out

        assert await run(context, settings, ["whoami"]) == 0
        assert TEST_HANDLE in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_whoami_signed_out(self, context, settings, capsys):
        assert await run(context, settings, ["whoami"]) == 1
        assert "Not signed in" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_commands_skip_background_refresh(self, context, settings):
        with patch("dropanchor.app.cli.AnchorContext") as mock_context_class:
            mock_context_class.create = AsyncMock(return_value=context)
            await run_command(build_parser().parse_args(["whoami"]), settings)

        mock_context_class.create.assert_awaited_once_with(
            settings, start_refresh_task=False
        )

    @pytest.mark.asyncio
    async def test_logout(self, context, settings, store):
        await context.session.login(TEST_HANDLE, TEST_PASSWORD)

        assert await run(context, settings, ["logout"]) == 0
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_checkin(self, context, settings, fake_pds, capsys):
        await context.session.login(TEST_HANDLE, TEST_PASSWORD)

        assert await run(context, settings, CHECKIN_ARGS) == 0

        assert fake_pds.count_records(ADDRESS_COLLECTION) == 1
        assert fake_pds.count_records(CHECKIN_COLLECTION) == 1
        assert "Checked in: at://" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_checkin_failure_prints_retry_hint(
        self, context, settings, fake_pds, capsys
    ):
        await context.session.login(TEST_HANDLE, TEST_PASSWORD)
        fake_pds.create_failures[CHECKIN_COLLECTION] = 500

        assert await run(context, settings, CHECKIN_ARGS) == 1

        err = capsys.readouterr().err
        assert "Check-in failed" in err
        assert f"--address-uri at://{TEST_DID}/{ADDRESS_COLLECTION}/" in err


class TestInvoke:
    """Top-level error handling."""

    def test_anchor_error_exit_code(self, capsys):
        error = AuthError(AuthFailure.reauthentication_required, "Sign in again")
        with patch("dropanchor.app.cli.run_command", AsyncMock(side_effect=error)):
            assert invoke(["whoami"]) == 1
        assert "Error: Sign in again" in capsys.readouterr().err

    def test_success_exit_code(self):
        with patch("dropanchor.app.cli.run_command", AsyncMock(return_value=0)):
            assert invoke(["logout"]) == 0
