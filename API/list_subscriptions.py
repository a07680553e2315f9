#!/usr/bin/python3
import sys


def main(feature: str = "all") -> int:
    """Print every Azure subscription and its features as JSON.

    Kept as a tiny example entrypoint so other scripts (and tests) can reuse it
    without triggering network calls at import time.
    """

    # Easiest to import rsc.py if it is in the same directory as this script.
    import rsc

    try:
        feature = rsc.FeatureName.parse(feature)
    except rsc.RSCError as e:
        sys.stderr.write(f"{e}\n")
        return 2

    # Credentials are read from RUBRIK_POLARIS_* variables, a .env file or
    # ~/.rubrik/polaris-service-account.json.
    #
    # List subscriptions with a single feature:
    # main("cloud-native-protection")
    #
    # List subscriptions with any feature:
    # main("all")
    try:
        with rsc.Client.from_env() as client:
            ctx = rsc.Context.background().with_timeout(300)
            with ctx:
                view = client.azure.subscriptions(ctx, feature)
    except rsc.RSCError as e:
        sys.stderr.write(f"failed to list subscriptions: {e}\n")
        return 1

    print(view.to_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(*sys.argv[1:2]))
