import sys


def log(message):
    print(message, flush=True)


def warn(message):
    log(f"Warning: {message}")


def fail(message):
    print(f"ERROR: {message}", file=sys.stderr, flush=True)
    sys.exit(1)


def log_tree(paths, title):
    tree = {}
    for name in paths:
        parts = [part for part in name.split("/") if part]
        node = tree
        for part in parts:
            node = node.setdefault(part, {})

    log(title)

    def render(node, prefix=""):
        items = sorted(node.items(), key=lambda item: item[0])
        for idx, (name, child) in enumerate(items):
            is_last = idx == len(items) - 1
            connector = "`-- " if is_last else "|-- "
            log(prefix + connector + name)
            extension = "    " if is_last else "|   "
            if child:
                render(child, prefix + extension)

    render(tree)
