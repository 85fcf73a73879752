from switchboard.shell import run

run()
