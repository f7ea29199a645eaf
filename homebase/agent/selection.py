from __future__ import annotations

import re
from typing import List, Optional, Sequence, Union

_ALL_RE = re.compile(r"\ball\b")
_NUMBER_RE = re.compile(r"\b(\d+)(?:st|nd|rd|th)?\b")
_ORDINALS = {"first": 0, "second": 1, "third": 2, "fourth": 3, "fifth": 4}

ALL = "all"


def selection_indices(text: Optional[str], max_count: int) -> Union[str, List[int]]:
  """Zero-based picks in a reply such as "2", "1, 3", "the second one", "last" or "all".

  Returns ``ALL`` for "all"; out of range picks are dropped.
  """
  lowered = (text or "").lower()
  if _ALL_RE.search(lowered):
    return ALL
  indices: List[int] = []
  for match in _NUMBER_RE.finditer(lowered):
    indices.append(int(match.group(1)) - 1)
  for word, index in _ORDINALS.items():
    if re.search(rf"\b{word}\b", lowered):
      indices.append(index)
  if max_count > 0 and re.search(r"\blast\b", lowered):
    indices.append(max_count - 1)
  picked: List[int] = []
  for index in indices:
    if 0 <= index < max_count and index not in picked:
      picked.append(index)
  return picked


def single_selection(text: Optional[str], max_count: int) -> Optional[int]:
  indices = selection_indices(text, max_count)
  if indices == ALL or len(indices) != 1:
    return None
  return indices[0]


def is_selection_reply(text: Optional[str], max_count: int) -> bool:
  indices = selection_indices(text, max_count)
  return indices == ALL or bool(indices)


def pick_candidate(text: Optional[str], titles: Sequence[str]) -> Optional[int]:
  """Index picked by a reply: one number/ordinal, else the first title containing the reply."""
  index = single_selection(text, len(titles))
  if index is not None:
    return index
  lowered = (text or "").strip().lower()
  if not lowered:
    return None
  for i, title in enumerate(titles):
    if lowered in (title or "").lower():
      return i
  return None
