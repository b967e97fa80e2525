"""
Derangement Test Suite

Tests the pairing algorithm with various group sizes:
- Small groups (2-5 people)
- Large groups (50+ people)
- Edge cases (too few people, duplicates, exhausted retry bound)
- Integrity validation

Run: python -m pytest tests/test_secret_santa_derangement.py -v
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.secret_santa_derangement import generate_derangement, validate_pairing_integrity


def assert_derangement(items, result):
    assert sorted(result) == sorted(items), "Result must be a permutation of the input"
    for original, drawn in zip(items, result):
        assert original != drawn, f"{original} drew themselves"


class TestSmallGroups:
    """Derangements for 2-5 people"""

    def test_two_people_always_swap(self):
        """The only derangement of two elements is the swap"""
        for _ in range(50):
            assert generate_derangement([100, 200]) == [200, 100]

    def test_three_people_always_valid(self):
        """3 elements have exactly 2 derangements; every run must hit one of them"""
        valid = {(200, 300, 100), (300, 100, 200)}
        seen = set()
        for _ in range(300):
            result = tuple(generate_derangement([100, 200, 300]))
            assert result in valid
            seen.add(result)
        assert seen == valid, "Both 3-element derangements should show up over 300 runs"

    def test_four_and_five_people(self):
        for size in (4, 5):
            items = list(range(1, size + 1))
            for _ in range(100):
                assert_derangement(items, generate_derangement(items))

    def test_input_not_modified(self):
        items = [1, 2, 3, 4]
        generate_derangement(items)
        assert items == [1, 2, 3, 4]


class TestLargeGroups:
    """Derangements for big games"""

    def test_fifty_people(self):
        items = list(range(1000, 1050))
        for _ in range(20):
            assert_derangement(items, generate_derangement(items))

    def test_string_ids(self):
        items = [f"user{i}" for i in range(12)]
        assert_derangement(items, generate_derangement(items))


class TestEdgeCases:
    """Preconditions and the retry-bound fallback"""

    def test_single_element_rejected(self):
        with pytest.raises(ValueError):
            generate_derangement([1])

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            generate_derangement([])

    def test_duplicates_rejected(self):
        with pytest.raises(ValueError):
            generate_derangement([1, 2, 2])

    def test_exhausted_bound_still_valid(self):
        """With no retries left the rotation fallback must still avoid self-assignment"""
        items = list(range(1, 8))
        for _ in range(50):
            assert_derangement(items, generate_derangement(items, max_attempts=0))

    def test_exhausted_bound_two_people(self):
        assert generate_derangement(["a", "b"], max_attempts=0) == ["b", "a"]


class TestValidationFunction:
    """validate_pairing_integrity"""

    def test_accepts_valid_pairing(self):
        validate_pairing_integrity({1: 2, 2: 3, 3: 1}, [1, 2, 3])

    def test_rejects_empty(self):
        with pytest.raises(ValueError, match="No pairings"):
            validate_pairing_integrity({}, [1, 2, 3])

    def test_rejects_self_assignment(self):
        with pytest.raises(ValueError, match="Self-assignment"):
            validate_pairing_integrity({1: 1, 2: 3, 3: 2}, [1, 2, 3])

    def test_rejects_duplicate_receiver(self):
        with pytest.raises(ValueError):
            validate_pairing_integrity({1: 2, 2: 1, 3: 1}, [1, 2, 3])

    def test_rejects_count_mismatch(self):
        with pytest.raises(ValueError, match="count mismatch"):
            validate_pairing_integrity({1: 2, 2: 1}, [1, 2, 3])

    def test_rejects_unknown_giver(self):
        with pytest.raises(ValueError, match="Giver mismatch"):
            validate_pairing_integrity({1: 2, 2: 3, 4: 1}, [1, 2, 3])
