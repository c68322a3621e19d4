"""Tests for Stage 4 duplicate detection."""
import threading

import pytest

from models.image_record import ImageRecord
from pipeline.errors import ComparisonError
from pipeline.stage4_duplicates import FingerprintLedger, find_duplicate, hamming_distance, run

BASE = "0" * 64


def _flip_bits(fingerprint: str, count: int) -> str:
    """Flip the lowest `count` bits of a hex fingerprint."""
    value = int(fingerprint, 16) ^ ((1 << count) - 1)
    return f"{value:0{len(fingerprint)}x}"


def _image(image_id: str, batch_id: str = "batch-1", status: str = "PROCESSING",
           fingerprint: str | None = None, **kwargs) -> ImageRecord:
    return ImageRecord(
        id=image_id,
        user_id="user-1",
        batch_id=batch_id,
        original_name=f"{image_id}.jpg",
        size_bytes=10,
        declared_mime_type="image/jpeg",
        blob_key=f"uploads/{image_id}.jpg",
        mime_type="image/jpeg",
        status=status,
        hash=fingerprint,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# hamming_distance
# ---------------------------------------------------------------------------

class TestHammingDistance:
    def test_identical_is_zero(self):
        assert hamming_distance(BASE, BASE) == 0

    def test_counts_bits(self):
        assert hamming_distance(BASE, _flip_bits(BASE, 2)) == 2
        assert hamming_distance("f0", "0f") == 8

    @pytest.mark.parametrize("a,b", [("a3", "5c"), ("ffff", "0001"), (BASE, _flip_bits(BASE, 7))])
    def test_symmetric(self, a, b):
        assert hamming_distance(a, b) == hamming_distance(b, a)

    def test_length_mismatch_raises(self):
        with pytest.raises(ComparisonError):
            hamming_distance("abc", "abcd")

    def test_non_hex_raises(self):
        with pytest.raises(ComparisonError):
            hamming_distance("zz", "00")


# ---------------------------------------------------------------------------
# find_duplicate
# ---------------------------------------------------------------------------

class TestFindDuplicate:
    def test_exact_match_wins_over_earlier_near_match(self):
        candidates = [("near", _flip_bits(BASE, 1)), ("exact", BASE)]
        assert find_duplicate(BASE, candidates, threshold=3) == ("exact", 0)

    def test_near_match_within_threshold(self):
        assert find_duplicate(BASE, [("a", _flip_bits(BASE, 3))], threshold=3) == ("a", 3)

    def test_outside_threshold_is_not_a_match(self):
        assert find_duplicate(BASE, [("a", _flip_bits(BASE, 4))], threshold=3) is None

    def test_no_candidates(self):
        assert find_duplicate(BASE, [], threshold=3) is None


# ---------------------------------------------------------------------------
# run() against the record store
# ---------------------------------------------------------------------------

class TestRun:
    def test_two_bit_difference_is_rejected_citing_first_image(self, store, settings):
        store.create_image(_image("first", status="VALIDATED", fingerprint=BASE))
        second = store.create_image(_image("second"))
        verdict = run(second, _flip_bits(BASE, 2), store, settings)
        assert not verdict.passed
        assert "first" in verdict.reason
        assert verdict.result.numeric_value == 2.0
        assert verdict.result.detail["duplicate_of"] == "first"

    def test_five_bit_difference_is_accepted(self, store, settings):
        store.create_image(_image("first", status="VALIDATED", fingerprint=BASE))
        second = store.create_image(_image("second"))
        verdict = run(second, _flip_bits(BASE, 5), store, settings)
        assert verdict.passed

    def test_other_batches_are_ignored(self, store, settings):
        store.create_image(_image("elsewhere", batch_id="batch-2", status="VALIDATED", fingerprint=BASE))
        image = store.create_image(_image("mine"))
        assert run(image, BASE, store, settings).passed

    def test_rejected_images_are_not_candidates(self, store, settings):
        store.create_image(_image("blurry", status="REJECTED", rejection_reason="blurry", fingerprint=BASE))
        image = store.create_image(_image("new"))
        assert run(image, BASE, store, settings).passed

    def test_soft_deleted_images_are_not_candidates(self, store, settings):
        store.create_image(_image("gone", status="VALIDATED", fingerprint=BASE, is_deleted=True))
        image = store.create_image(_image("new"))
        assert run(image, BASE, store, settings).passed

    def test_threshold_from_settings(self, store, settings):
        strict = settings.model_copy(update={"duplicate_hamming_threshold": 0})
        store.create_image(_image("first", status="VALIDATED", fingerprint=BASE))
        image = store.create_image(_image("second"))
        assert run(image, _flip_bits(BASE, 1), store, strict).passed

    def test_mismatched_stored_length_raises(self, store, settings):
        store.create_image(_image("legacy", status="VALIDATED", fingerprint="ab" * 8))
        image = store.create_image(_image("new"))
        with pytest.raises(ComparisonError):
            run(image, _flip_bits(BASE, 9), store, settings)


# ---------------------------------------------------------------------------
# FingerprintLedger (strict mode)
# ---------------------------------------------------------------------------

class TestFingerprintLedger:
    def test_pending_fingerprint_blocks_concurrent_near_duplicate(self, store, settings):
        ledger = FingerprintLedger()
        a = store.create_image(_image("a"))
        b = store.create_image(_image("b"))
        assert run(a, BASE, store, settings, ledger).passed
        verdict = run(b, _flip_bits(BASE, 1), store, settings, ledger)
        assert not verdict.passed
        assert "a" in verdict.reason

    def test_release_frees_the_reservation(self, store, settings):
        ledger = FingerprintLedger()
        a = store.create_image(_image("a"))
        b = store.create_image(_image("b"))
        run(a, BASE, store, settings, ledger)
        ledger.release("batch-1", "a")
        assert ledger.pending("batch-1") == {}
        assert run(b, BASE, store, settings, ledger).passed

    def test_only_one_of_many_concurrent_copies_passes(self, store, settings):
        ledger = FingerprintLedger()
        images = [store.create_image(_image(f"img-{i}")) for i in range(8)]
        results: list[bool] = []
        lock = threading.Lock()

        def check(image):
            verdict = run(image, BASE, store, settings, ledger)
            with lock:
                results.append(verdict.passed)

        threads = [threading.Thread(target=check, args=(img,)) for img in images]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1

    def test_without_ledger_concurrent_copies_can_both_pass(self, store, settings):
        # Neither image is VALIDATED yet, so neither sees the other
        a = store.create_image(_image("a"))
        b = store.create_image(_image("b"))
        assert run(a, BASE, store, settings).passed
        assert run(b, BASE, store, settings).passed
