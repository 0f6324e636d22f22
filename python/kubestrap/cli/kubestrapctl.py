import sys
import subprocess


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: kubestrapctl <subcommand> [args...]")
        print("Subcommands: bootstrap (bootstrap | routes | smoke | plan | status)")
        sys.exit(1)

    subcommand = sys.argv[1]
    subcommand_args = sys.argv[2:]

    cmd = [sys.executable, "-m", f"kubestrap.cli.{subcommand}"] + subcommand_args
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
