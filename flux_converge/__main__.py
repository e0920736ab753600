"""Run the flux-converge command line tool."""

from flux_converge.tool.flux_converge import main

if __name__ == "__main__":
    main()
