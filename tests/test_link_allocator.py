"""
Tests for link code allocation and share link parsing.
"""
import asyncio
import itertools
from datetime import datetime, timedelta

import pytest

from conftest import seed_collection
from pullbox.config import get_settings
from pullbox.errors import AllocationExhausted, ValidationError
from pullbox.services.link_allocator import LinkAllocator, build_share_url, extract_link_code
from pullbox.utils.security import LINK_CODE_ALPHABET, generate_link_code


class TestExtractLinkCode:
    """Tests for accepting codes, share URLs and paths."""

    @pytest.mark.parametrize(
        "value",
        [
            "AB12CD",
            "  AB12CD ",
            "https://pullbox.test/#/box/AB12CD",
            "#/box/AB12CD",
            "/box/AB12CD",
            "https://pullbox.test/#/box/AB12CD?ref=qr",
        ],
    )
    def test_accepted_forms(self, value):
        assert extract_link_code(value) == "AB12CD"

    @pytest.mark.parametrize("value", ["", None, "ABC", "ABCDEFGHIJKLM", "AB-12", "https://pullbox.test/#/box/"])
    def test_rejected_values(self, value):
        with pytest.raises(ValidationError):
            extract_link_code(value)

    def test_share_url_format(self):
        assert build_share_url("AB12CD") == "https://pullbox.test/#/box/AB12CD"


class TestGenerateLinkCode:
    """Tests for code generation."""

    def test_default_length_and_alphabet(self):
        code = generate_link_code()
        assert len(code) == 6
        assert set(code) <= set(LINK_CODE_ALPHABET)

    def test_custom_length(self):
        assert len(generate_link_code(12)) == 12


class TestLinkAllocator:
    """Tests for collision-safe allocation."""

    @pytest.mark.asyncio
    async def test_allocate_sets_retention_and_zero_count(self, db):
        now = datetime(2026, 3, 1, 12, 0, 0)
        allocator = LinkAllocator(db, clock=lambda: now)

        collection = await allocator.allocate("owner-1", "Wedding", "folder-1")

        assert len(collection.link_code) == 6
        assert collection.item_count == 0
        assert collection.created_at == now
        assert collection.expires_at == now + timedelta(days=90)
        assert collection.drive_folder_id == "folder-1"

    @pytest.mark.asyncio
    async def test_collision_retries_with_fresh_code(self, session_factory, db):
        await seed_collection(session_factory, link_code="AAAAAA")
        codes = iter(["AAAAAA", "BBBBBB"])

        collection = await LinkAllocator(db, code_generator=lambda: next(codes)).allocate(
            "owner-2", "Party", "folder-2"
        )

        assert collection.link_code == "BBBBBB"

    @pytest.mark.asyncio
    async def test_exhaustion_raises(self, session_factory, db):
        await seed_collection(session_factory, link_code="AAAAAA")

        with pytest.raises(AllocationExhausted) as exc_info:
            await LinkAllocator(db, code_generator=lambda: "AAAAAA").allocate("owner-2", "Party", "folder-2")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_concurrent_allocators_never_share_a_code(self, session_factory):
        settings = get_settings().model_copy(update={"link_code_max_attempts": 8})
        pool = ["AAAA", "BBBB", "CCCC", "DDDD"]

        async def _allocate(offset: int):
            codes = itertools.cycle(pool[offset:] + pool[:offset])
            async with session_factory() as session:
                allocator = LinkAllocator(session, settings=settings, code_generator=lambda: next(codes))
                collection = await allocator.allocate(f"owner-{offset}", "Box", f"folder-{offset}")
                return collection.link_code

        results = await asyncio.gather(*(_allocate(i % 4) for i in range(6)), return_exceptions=True)

        codes = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if not isinstance(r, str)]
        assert len(codes) == len(set(codes))
        assert len(codes) == 4
        assert all(isinstance(f, AllocationExhausted) for f in failures)
