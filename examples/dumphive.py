import sys

from dissect.hivetree import Error, Hive


def main() -> None:
    with Hive(sys.argv[1]) as hive:
        for handle, result in hive.walk():
            if isinstance(result, Error):
                print(f"Node at {handle.offset:#x}: {result}", file=sys.stderr)
                continue

            print(result)


if __name__ == "__main__":
    main()
