CONNECTED = "connected"  # server -> client, carries the assigned member id
JOIN_ROOM = "join-room"  # roomId, memberId
LEAVE_ROOM = "leave-room"  # roomId
CHECK_ROOM = "check-room"  # roomId, answered with an ack
ACK = "ack"  # reply to any request that carried an "ack" id
USER_CONNECTED = "user-connected"  # memberId
USER_DISCONNECTED = "user-disconnected"  # memberId
OFFER = "offer"  # roomId, offer
ANSWER = "answer"  # roomId, answer
ICE_CANDIDATE = "ice-candidate"  # roomId, candidate

# Payloads the relay forwards to the other room members without looking inside
FORWARDED_EVENTS = (OFFER, ANSWER, ICE_CANDIDATE)

# **Frame layout**
# - `event` = one of the names above
# - `data` = event payload (object)
# - `ack` = optional integer, echoed back in the `ack` reply
