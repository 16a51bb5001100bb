class EmailSendError(RuntimeError):
    pass
