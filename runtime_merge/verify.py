import hashlib


def bytes_equal(left, right):
    return len(left) == len(right) and bytes(left) == bytes(right)


def licenses_equal(left, right):
    return bytes_equal(left, right)


def managed_libraries_equal(left, right):
    # Build timestamps and MVIDs count as differences.
    return bytes_equal(left, right)


def digest(data):
    return hashlib.sha256(data).hexdigest()


def describe_mismatch(label, left_rid, left, right_rid, right):
    return (
        f"{label} differ: {left_rid} sha256={digest(left)} ({len(left)} bytes), "
        f"{right_rid} sha256={digest(right)} ({len(right)} bytes)"
    )
