from markovbot.main import run

run()
