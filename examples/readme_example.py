import tipshaper.util
from tipshaper.device.nanonis import NanonisClient
from tipshaper.meas import SignalRegistry

HOST, PORT = "127.0.0.1", 6501

tipshaper.util.start_client_log(log_to_stdout=True)  # also logs to ~/.tipshaper/tipshaper.log

with NanonisClient(HOST, PORT) as client:
    registry = SignalRegistry.from_names(client.signals_names_get())
    freq = registry["freq shift"]  # alias of "OC M1 Freq. Shift (Hz)"
    print(f"{freq.name}: index {freq.index}, TCP channel {freq.tcp_channel}")

    value = client.signals_vals_get([freq.index])[0]
    print(f"Current value: {value:.4g}")
    print(f"Bias: {client.bias_get():.3f} V")
