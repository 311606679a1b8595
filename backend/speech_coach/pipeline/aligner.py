"""
Word alignment and a phoneme-error proxy.

The word alignment is a unit-cost Levenshtein alignment between the
reference and the recognized words. When several minimal paths exist the
backtrack prefers, in order: deletion, insertion, substitution/match. The
order is a fixed policy so the same inputs always give the same ops.

The phoneme error rate (PER) is computed over coarse pseudo-phonemes
derived from spelling (a handful of digraphs, one shared vowel class).
It is a crude stand-in for goodness-of-pronunciation that needs no
phonetic front-end.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from ..models import AlignmentResult, AlignmentStats, Op

logger = logging.getLogger(__name__)

DIGRAPHS = {
	"ch": "CH",
	"sh": "SH",
	"th": "TH",
	"ph": "F",
	"ng": "NG",
}
VOWELS = frozenset("aeiouy")
VOWEL_CLASS = "V"

_NON_WORD = re.compile(r"[^a-z']")


def tokenize(text: Optional[str]) -> List[str]:
	"""Lowercase, split on whitespace, keep only [a-z'] and drop empties."""
	tokens = (_NON_WORD.sub("", w.lower()) for w in (text or "").split())
	return [t for t in tokens if t]


def pseudo_phonemes(word: str) -> List[str]:
	w = _NON_WORD.sub("", (word or "").lower())
	symbols: List[str] = []
	i = 0
	while i < len(w):
		pair = w[i:i + 2]
		if pair in DIGRAPHS:
			symbols.append(DIGRAPHS[pair])
			i += 2
			continue
		c = w[i]
		if c in VOWELS:
			symbols.append(VOWEL_CLASS)
		elif c != "'":
			symbols.append(c.upper())
		i += 1
	return symbols


def word_level_align(ref: Sequence[str], hyp: Sequence[str]) -> List[Op]:
	m, n = len(ref), len(hyp)
	dp = [[0] * (n + 1) for _ in range(m + 1)]
	for i in range(m + 1):
		dp[i][0] = i
	for j in range(n + 1):
		dp[0][j] = j
	for i in range(1, m + 1):
		for j in range(1, n + 1):
			cost = 0 if ref[i - 1] == hyp[j - 1] else 1
			dp[i][j] = min(dp[i - 1][j] + 1, dp[i][j - 1] + 1, dp[i - 1][j - 1] + cost)

	ops: List[Op] = []
	i, j = m, n
	while i > 0 or j > 0:
		if i > 0 and dp[i][j] == dp[i - 1][j] + 1:
			ops.append(Op(op="D", ref=ref[i - 1]))
			i -= 1
		elif j > 0 and dp[i][j] == dp[i][j - 1] + 1:
			ops.append(Op(op="I", hyp=hyp[j - 1]))
			j -= 1
		else:
			code = "M" if ref[i - 1] == hyp[j - 1] else "S"
			ops.append(Op(op=code, ref=ref[i - 1], hyp=hyp[j - 1]))
			i -= 1
			j -= 1
	ops.reverse()
	return ops


def count_ops(ops: Sequence[Op]) -> AlignmentStats:
	counts = Counter(o.op for o in ops)
	return AlignmentStats(S=counts["S"], D=counts["D"], I=counts["I"], M=counts["M"])


def phoneme_error_rate(ref: Sequence[str], hyp: Sequence[str]) -> float:
	"""Edit distance between the space-joined symbol strings over the reference symbol count."""
	ref_ph = [p for w in ref for p in pseudo_phonemes(w)]
	if not ref_ph:
		return 0.0
	hyp_ph = [p for w in hyp for p in pseudo_phonemes(w)]
	dist = Levenshtein.distance(" ".join(ref_ph), " ".join(hyp_ph))
	return dist / float(len(ref_ph))


def norm_gop_error(per: float) -> float:
	"""0-100 goodness-of-pronunciation error derived from PER (saturates at PER >= 1)."""
	goodness = max(0.0, 1.0 - per)
	return (1.0 - goodness) * 100.0


def phoneme_confusions(ops: Sequence[Op], limit: int = 3) -> List[str]:
	"""Most frequent pseudo-phoneme swaps/drops inside substituted words."""
	counts: Counter = Counter()
	for o in ops:
		if o.op != "S" or not o.ref or not o.hyp:
			continue
		ref_ph = pseudo_phonemes(o.ref)
		hyp_ph = pseudo_phonemes(o.hyp)
		for edit in Levenshtein.editops(ref_ph, hyp_ph):
			if edit.tag == "replace":
				counts[f"/{ref_ph[edit.src_pos]}/ -> /{hyp_ph[edit.dest_pos]}/"] += 1
			elif edit.tag == "delete":
				counts[f"/{ref_ph[edit.src_pos]}/ dropped"] += 1
	return [issue for issue, _ in counts.most_common(limit)]


def align(reference_text: Optional[str], transcript_text: Optional[str]) -> AlignmentResult:
	"""Align reference and transcript; free-form mode (no reference tokens) aligns the transcript with itself."""
	hyp_words = tokenize(transcript_text)
	ref_words = tokenize(reference_text) or list(hyp_words)
	ops = word_level_align(ref_words, hyp_words)
	stats = count_ops(ops)
	per = phoneme_error_rate(ref_words, hyp_words)
	result = AlignmentResult(
		ref_words=ref_words,
		hyp_words=hyp_words,
		ops=ops,
		stats=stats,
		phoneme_error_rate=per,
		norm_gop_err=norm_gop_error(per),
	)
	logger.info(
		"Aligned %d ref / %d hyp words: M=%d S=%d D=%d I=%d PER=%.3f",
		len(ref_words), len(hyp_words), stats.M, stats.S, stats.D, stats.I, per,
	)
	return result
