from email_worker.worker import cli


if __name__ == "__main__":
    cli()
