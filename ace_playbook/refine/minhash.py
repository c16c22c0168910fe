# ace_playbook/refine/minhash.py

from datasketch import MinHash, MinHashLSH  # type: ignore

from ace_playbook.core.text import canonical_form, normalize_text


def _shingles(text: str) -> set[str]:
    """Canonical word terms plus character trigrams of the normalized text."""
    normalized = normalize_text(text)
    shingles = set(canonical_form(text).split())
    shingles.update(normalized[i : i + 3] for i in range(len(normalized) - 2))
    return shingles


def generate_minhash(text: str, num_perm: int = 128) -> MinHash:
    """Generate MinHash signature for text."""
    m = MinHash(num_perm=num_perm)
    for shingle in _shingles(text):
        m.update(shingle.encode("utf8"))
    return m


def candidate_neighbors(
    items: list[tuple[str, str]], num_perm: int = 128, threshold: float = 0.5
) -> dict[str, set[str]]:
    """Propose likely-duplicate neighbours for each (id, text) pair via LSH.

    Only used to narrow the exact comparison in large buckets; the caller
    still scores every proposed pair exactly.
    """
    lsh = MinHashLSH(threshold=threshold, num_perm=num_perm)
    signatures: dict[str, MinHash] = {}
    for key, text in items:
        signature = generate_minhash(text, num_perm)
        lsh.insert(key, signature)
        signatures[key] = signature

    neighbors: dict[str, set[str]] = {key: set() for key in signatures}
    for key, signature in signatures.items():
        for other in lsh.query(signature):
            if other != key:
                neighbors[key].add(other)
                neighbors[other].add(key)
    return neighbors
