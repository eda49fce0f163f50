from audioflow.main import run

# Run the conversion service
if __name__ == "__main__":
    run()
