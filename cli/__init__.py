"""Student Records Registry command line client"""
