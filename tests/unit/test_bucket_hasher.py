"""Tests for deterministic subject bucketing."""

from flagkit.core.feature_flags.hashing import (
    BUCKET_SPACE,
    bucket,
    hash_key,
    percentage_threshold,
)


class TestHashKey:
    """Tests for hash_key."""

    def test_subject_then_flag(self):
        """Test key joins subject and flag with NUL."""
        assert hash_key("user-42", "checkout") == "user-42\x00checkout"

    def test_salt_prefix(self):
        """Test salt is prepended when given."""
        assert hash_key("user-42", "checkout", salt="s1") == "s1\x00user-42\x00checkout"

    def test_empty_salt_ignored(self):
        """Test empty salt gives the unsalted key."""
        assert hash_key("u", "f", salt="") == hash_key("u", "f")

    def test_colons_do_not_collide(self):
        """Test colons inside subject or flag keys cannot shift the boundary."""
        assert hash_key("a:b", "c") != hash_key("a", "b:c")
        assert hash_key("b", "c", salt="a") != hash_key("a:b", "c")


class TestBucket:
    """Tests for bucket."""

    def test_range(self):
        """Test buckets fall in [0, 10000)."""
        for i in range(2000):
            assert 0 <= bucket(f"user-{i}", "flag") < BUCKET_SPACE

    def test_deterministic(self):
        """Test same inputs always give the same bucket."""
        first = bucket("user-42", "checkout-experiment")
        for _ in range(100):
            assert bucket("user-42", "checkout-experiment") == first

    def test_flag_key_changes_bucket(self):
        """Test buckets are independent across flags."""
        differing = sum(
            1 for i in range(200) if bucket(f"user-{i}", "flag-a") != bucket(f"user-{i}", "flag-b")
        )
        assert differing > 150

    def test_salt_changes_bucket(self):
        """Test salting reshuffles subjects."""
        differing = sum(
            1 for i in range(200) if bucket(f"user-{i}", "flag") != bucket(f"user-{i}", "flag", "v2")
        )
        assert differing > 150

    def test_uniform_distribution(self):
        """Test about 30% of subjects fall under a 30% threshold."""
        threshold = percentage_threshold(30)
        inside = sum(1 for i in range(10000) if bucket(f"subject-{i}", "rollout") < threshold)
        assert 2700 <= inside <= 3300

    def test_spread(self):
        """Test different subjects land in many different buckets."""
        buckets = {bucket(f"user{i}", "flag") for i in range(1000)}
        assert len(buckets) > 900


class TestPercentageThreshold:
    """Tests for percentage_threshold."""

    def test_scaling(self):
        """Test percentages scale to the bucket space."""
        assert percentage_threshold(0) == 0
        assert percentage_threshold(30) == 3000
        assert percentage_threshold(100) == BUCKET_SPACE
        assert percentage_threshold(33.33) == 3333

    def test_clamped(self):
        """Test out-of-range percentages are clamped."""
        assert percentage_threshold(-5) == 0
        assert percentage_threshold(150) == BUCKET_SPACE
